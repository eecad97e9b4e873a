from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR = "two_factor"


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    status: AccountStatus = AccountStatus.PENDING
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    refresh_token: Optional[str] = None
    # sha256 digest of the outstanding reset token, never the token itself
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts)


@dataclass
class Role:
    id: int
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: int
    resource: str
    action: str
    description: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass
class VerificationToken:
    id: int
    account_id: str
    token: str
    purpose: TokenPurpose
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.used and self.expires_at > (now or utcnow())


@dataclass
class AuditEvent:
    """One row of the append-only audit trail."""

    id: int
    action: str
    entity_type: str
    account_id: Optional[str] = None
    entity_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
