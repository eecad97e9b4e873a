from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple

from gemvault.storage.models import AccountStatus


class StatusEvent(str, Enum):
    EMAIL_VERIFIED = "email_verified"
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    SUSPEND = "suspend"


_P, _A, _I, _S = (
    AccountStatus.PENDING,
    AccountStatus.ACTIVE,
    AccountStatus.INACTIVE,
    AccountStatus.SUSPENDED,
)

# Every (state, event) pair has an entry; email verification only promotes pending.
TRANSITIONS: Dict[Tuple[AccountStatus, StatusEvent], AccountStatus] = {
    (_P, StatusEvent.EMAIL_VERIFIED): _A,
    (_A, StatusEvent.EMAIL_VERIFIED): _A,
    (_I, StatusEvent.EMAIL_VERIFIED): _I,
    (_S, StatusEvent.EMAIL_VERIFIED): _S,
    (_P, StatusEvent.ACTIVATE): _A,
    (_A, StatusEvent.ACTIVATE): _A,
    (_I, StatusEvent.ACTIVATE): _A,
    (_S, StatusEvent.ACTIVATE): _A,
    (_P, StatusEvent.DEACTIVATE): _I,
    (_A, StatusEvent.DEACTIVATE): _I,
    (_I, StatusEvent.DEACTIVATE): _I,
    (_S, StatusEvent.DEACTIVATE): _I,
    (_P, StatusEvent.SUSPEND): _S,
    (_A, StatusEvent.SUSPEND): _S,
    (_I, StatusEvent.SUSPEND): _S,
    (_S, StatusEvent.SUSPEND): _S,
}

LOGIN_ALLOWED = frozenset({AccountStatus.PENDING, AccountStatus.ACTIVE})


def next_status(current: AccountStatus | str, event: StatusEvent | str) -> AccountStatus:
    return TRANSITIONS[(AccountStatus(current), StatusEvent(event))]


def can_login(status: AccountStatus | str) -> bool:
    return AccountStatus(status) in LOGIN_ALLOWED


__all__ = ["StatusEvent", "TRANSITIONS", "LOGIN_ALLOWED", "next_status", "can_login"]
