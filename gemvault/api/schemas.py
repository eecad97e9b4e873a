from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from gemvault.service.account_status import StatusEvent


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "invalid_mfa_code",
    "forbidden",
    "account_inactive",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "transaction_failure",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """8-128 characters with at least one upper-case letter, one lower-case letter and one digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an upper-case letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lower-case letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    return value


_PHONE_PATTERN = re.compile(r"^\+?[0-9 ().-]{6,32}$")


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    return cleaned or None


def _clean_phone(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    if not _PHONE_PATTERN.match(value.strip()):
        raise ValueError("invalid phone number")
    return value.strip()


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _clean_phone(value)


class RegisterResponse(BaseModel):
    user_id: str
    email: str
    status: str
    email_verified: bool = False


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AuthResponse(BaseModel):
    user_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    roles: List[str] = Field(default_factory=list)
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    mfa_token_expires_in: Optional[int] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    password: str
    confirm_password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.new_password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class ProfileResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: str = ""
    phone: Optional[str] = None
    status: str
    email_verified: bool
    mfa_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10, description="Current TOTP code")

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip().replace(" ", "")


class MfaVerifyRequest(MfaCodeRequest):
    mfa_token: str = Field(..., max_length=256)


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    qr_code_url: str
    expires_in: int


class MfaStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether MFA is currently enabled")
    pending: bool = Field(..., description="Whether an enrollment awaits confirmation")


class RoleRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50, pattern=r"^[a-z][a-z0-9_-]*$")
    description: Optional[str] = Field(default=None, max_length=255)


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(
        default=None, min_length=2, max_length=50, pattern=r"^[a-z][a-z0-9_-]*$"
    )
    description: Optional[str] = Field(default=None, max_length=255)


class PermissionResponse(BaseModel):
    id: int
    resource: str
    action: str
    name: str
    description: Optional[str] = None


class RoleResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    permissions: Optional[List[PermissionResponse]] = None


class PermissionRequest(BaseModel):
    resource: str = Field(..., min_length=1, max_length=50, pattern=r"^[a-z][a-z0-9_]*$")
    action: str = Field(..., min_length=1, max_length=50, pattern=r"^[a-z][a-z0-9_]*$")
    description: Optional[str] = Field(default=None, max_length=255)


class RolePermissionsRequest(BaseModel):
    permission_ids: List[int] = Field(default_factory=list, max_length=500)


class AccountRoleRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=50)


class AccountStatusRequest(BaseModel):
    event: StatusEvent


class AccountStatusResponse(BaseModel):
    user_id: str
    status: str
    email_verified: bool


class ProfileUpdateRequest(BaseModel):
    """Self-service profile edit; omitted fields are left alone, null clears one."""

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_names(cls, value: Optional[str]) -> Optional[str]:
        return _clean_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        return _clean_phone(value)


class AccountPageResponse(BaseModel):
    items: List[ProfileResponse]
    page: int
    page_size: int
    total: int
    total_pages: int


class AuditEventResponse(BaseModel):
    id: int
    action: str
    entity_type: str
    account_id: Optional[str] = None
    entity_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime
