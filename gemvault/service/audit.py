"""Append-only audit trail of identity events.

Events are written after the change they describe has committed. A failed
audit write is logged and never undoes or blocks the operation itself.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from gemvault.logging import get_correlation_id, get_logger
from gemvault.storage.errors import ConstraintViolation, TransactionFailure
from gemvault.storage.models import AuditEvent

logger = get_logger(__name__)

_USER_AGENT_MAX = 512


class AuditAction(str, Enum):
    REGISTER = "register"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    VERIFY = "verify"
    UPDATE = "update"
    DELETE = "delete"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    STATUS_CHANGE = "status_change"
    MFA_ENABLE = "mfa_enable"
    MFA_DISABLE = "mfa_disable"
    ROLE_ASSIGN = "role_assign"
    ROLE_REVOKE = "role_revoke"


@dataclass(frozen=True)
class RequestOrigin:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# Set per request by the HTTP middleware
_request_origin: ContextVar[Optional[RequestOrigin]] = ContextVar(
    "request_origin", default=None
)


def set_request_origin(ip_address: Optional[str], user_agent: Optional[str]) -> RequestOrigin:
    origin = RequestOrigin(
        ip_address=ip_address or None,
        user_agent=(user_agent or "")[:_USER_AGENT_MAX] or None,
    )
    _request_origin.set(origin)
    return origin


def get_request_origin() -> RequestOrigin:
    return _request_origin.get() or RequestOrigin()


class AuditTrail:
    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction | str,
        *,
        account_id: Optional[str] = None,
        entity_type: str = "account",
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        action = AuditAction(action)
        origin = get_request_origin()
        try:
            return self.store.record_audit_event(
                action.value,
                entity_type,
                account_id=account_id,
                entity_id=entity_id if entity_id is not None else account_id,
                details=details or {},
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
                request_id=get_correlation_id(),
            )
        except (ConstraintViolation, TransactionFailure) as exc:
            logger.error(
                "audit_record_failed",
                action=action.value,
                account_id=account_id,
                error=str(exc),
            )
            return None

    def recent(self, *, account_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        return self.store.list_audit_events(account_id=account_id, limit=limit)


__all__ = [
    "AuditAction",
    "AuditTrail",
    "RequestOrigin",
    "get_request_origin",
    "set_request_origin",
]
