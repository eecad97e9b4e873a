from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Tuple,
)

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gemvault.config import Settings
from gemvault.logging import get_logger, hash_identifier
from gemvault.service.account_status import (
    LOGIN_ALLOWED,
    StatusEvent,
    can_login,
    next_status,
)
from gemvault.service.audit import AuditAction, AuditTrail
from gemvault.service.email import EmailService
from gemvault.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidMfaCodeError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from gemvault.service.mfa import MfaService
from gemvault.service.rbac import RBACResolver
from gemvault.service.tokens import TokenCodec, TokenKind, TokenPair
from gemvault.service.verification import VerificationManager
from gemvault.storage.common import normalize_email
from gemvault.storage.errors import ConstraintViolation
from gemvault.storage.models import (
    Account,
    AccountStatus,
    AuditEvent,
    Permission,
    Role,
    TokenPurpose,
    VerificationToken,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def transaction(self) -> ContextManager[Any]:
        ...

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        status: AccountStatus = AccountStatus.PENDING,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        ...

    def set_account_status(
        self, account_id: str, status: AccountStatus, *, email_verified: Optional[bool] = None
    ) -> Optional[Account]:
        ...

    def record_login(self, account_id: str, at: Optional[datetime] = None) -> None:
        ...

    def delete_account(self, account_id: str) -> bool:
        ...

    def lock_account(self, account_id: str) -> None:
        ...

    def list_accounts(self, *, offset: int = 0, limit: int = 20) -> List[Account]:
        ...

    def count_accounts(self) -> int:
        ...

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> None:
        ...

    def rotate_refresh_token(self, account_id: str, expected: str, new: str) -> bool:
        ...

    def set_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        clear_reset: bool = True,
        clear_refresh: bool = True,
    ) -> bool:
        ...

    def set_password_reset(
        self, account_id: str, digest: Optional[str], expires: Optional[datetime]
    ) -> None:
        ...

    def set_mfa(self, account_id: str, secret: Optional[str], enabled: bool) -> None:
        ...

    # roles and permissions
    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        ...

    def get_role(self, role_id: int) -> Optional[Role]:
        ...

    def get_role_by_name(self, name: str) -> Optional[Role]:
        ...

    def list_roles(self) -> List[Role]:
        ...

    def update_role(
        self, role_id: int, *, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Role]:
        ...

    def delete_role(self, role_id: int) -> bool:
        ...

    def assign_role(self, account_id: str, role_id: int) -> None:
        ...

    def revoke_role(self, account_id: str, role_id: int) -> bool:
        ...

    def list_account_roles(self, account_id: str) -> List[Role]:
        ...

    def create_permission(
        self, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        ...

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        ...

    def find_permission(self, resource: str, action: str) -> Optional[Permission]:
        ...

    def list_permissions(self) -> List[Permission]:
        ...

    def add_role_permission(self, role_id: int, permission_id: int) -> None:
        ...

    def remove_role_permission(self, role_id: int, permission_id: int) -> bool:
        ...

    def set_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        ...

    def list_role_permissions(self, role_id: int) -> List[Permission]:
        ...

    def list_account_permissions(self, account_id: str) -> List[Permission]:
        ...

    # verification tokens
    def create_verification_token(
        self, account_id: str, token: str, purpose: TokenPurpose, expires_at: datetime
    ) -> VerificationToken:
        ...

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        ...

    def find_live_verification_token(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        ...

    def invalidate_verification_tokens(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> int:
        ...

    def consume_verification_token(
        self, token: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        ...

    def count_recent_verification_tokens(
        self, account_id: str, purpose: TokenPurpose, since: datetime
    ) -> int:
        ...

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        ...

    # audit trail
    def record_audit_event(
        self,
        action: str,
        entity_type: str,
        *,
        account_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AuditEvent:
        ...

    def list_audit_events(
        self, *, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        ...

    def verify_connection(self) -> None:
        ...


@dataclass(frozen=True)
class AuthContext:
    account_id: str
    email: str
    roles: Tuple[str, ...] = ()


@dataclass
class LoginResult:
    account: Account
    tokens: Optional[TokenPair] = None
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    mfa_token_expires_in: Optional[int] = None
    roles: List[str] = field(default_factory=list)


@dataclass
class AccountPage:
    items: List[Account]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0


# Profile fields an account holder may change about themselves
PROFILE_FIELDS = ("first_name", "last_name", "phone")


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthService:
    """Registration, login, token rotation and password lifecycle.

    Every multi-row write runs in one ``store.transaction()``. Email goes out
    after the commit, in a worker thread with a timeout, and a failed send
    never undoes the write that triggered it.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        verification: VerificationManager,
        rbac: RBACResolver,
        mfa: MfaService,
        email: EmailService,
        settings: Settings,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.verification = verification
        self.rbac = rbac
        self.mfa = mfa
        self.email = email
        self.settings = settings
        self.audit = audit or AuditTrail(store)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # compared against when the account does not exist, so timing matches
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(32))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    def _check_hash(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def _verify_password(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._check_hash, password_hash, password)

    async def _dispatch(self, kind: str, send: Callable[..., bool], *args: Any) -> None:
        """Best-effort email send; never raises."""
        try:
            sent = await asyncio.wait_for(
                asyncio.to_thread(send, *args),
                timeout=self.settings.email_dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("email_dispatch_timeout", kind=kind)
            return
        except Exception as exc:
            logger.error("email_dispatch_failed", kind=kind, error=str(exc))
            return
        if not sent:
            logger.warning("email_dispatch_failed", kind=kind)

    def _start_session(self, account: Account, *, mfa_token: Optional[str] = None) -> LoginResult:
        roles = self.rbac.role_names(account.id)
        pair = self.codec.issue_pair(account.id, account.email, roles)
        with self.store.transaction():
            if mfa_token is not None:
                self.verification.consume(mfa_token, TokenPurpose.TWO_FACTOR)
            # overwriting revokes any refresh token issued earlier
            self.store.set_refresh_token(account.id, pair.refresh_token)
            self.store.record_login(account.id, utcnow())
        logger.info("login_succeeded", account_id=account.id, mfa=mfa_token is not None)
        self.audit.record(
            AuditAction.LOGIN, account_id=account.id, details={"mfa": mfa_token is not None}
        )
        return LoginResult(account=account, tokens=pair, roles=roles)

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    # ------------------------------------------------------------------
    # registration and login
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        email = normalize_email(email)
        if self.store.get_account_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        role = self.store.get_role_by_name(self.settings.default_role)
        if not role:
            logger.error("default_role_missing", role=self.settings.default_role)
            raise ServerError()
        password_hash = await self._hash_password(password)
        try:
            with self.store.transaction():
                account = self.store.create_account(
                    email,
                    password_hash,
                    status=AccountStatus.PENDING,
                    first_name=first_name,
                    last_name=last_name,
                    phone=phone,
                )
                self.store.assign_role(account.id, role.id)
                token = self.verification.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail={"field": "email"}) from exc
        logger.info("account_registered", account_id=account.id, role=role.name)
        self.audit.record(AuditAction.REGISTER, account_id=account.id, details={"role": role.name})
        await self._dispatch(
            "email_verification", self.email.send_email_verification, account.email, token.token
        )
        return account

    async def login(self, email: str, password: str) -> LoginResult:
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if not account:
            await self._verify_password(self._dummy_hash, password)
            email_hash = hash_identifier(email)
            logger.info("login_failed", reason="unknown_account", email_hash=email_hash)
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                details={"reason": "unknown_account", "email_hash": email_hash},
            )
            raise InvalidCredentialsError()
        if not await self._verify_password(account.password_hash, password):
            logger.info("login_failed", reason="bad_password", account_id=account.id)
            self.audit.record(
                AuditAction.LOGIN_FAILED, account_id=account.id, details={"reason": "bad_password"}
            )
            raise InvalidCredentialsError()
        if not can_login(account.status):
            logger.info("login_blocked", account_id=account.id, status=account.status.value)
            self.audit.record(
                AuditAction.LOGIN_FAILED,
                account_id=account.id,
                details={"reason": "account_inactive", "status": account.status.value},
            )
            raise AccountInactiveError()

        # ENABLE_MFA only gates new enrollment; enrolled accounts are always challenged
        if account.mfa_enabled:
            challenge = self.verification.issue(account.id, TokenPurpose.TWO_FACTOR)
            logger.info("login_mfa_required", account_id=account.id)
            return LoginResult(
                account=account,
                mfa_required=True,
                mfa_token=challenge.token,
                mfa_token_expires_in=int(
                    self.verification.ttl_for(TokenPurpose.TWO_FACTOR).total_seconds()
                ),
            )
        return self._start_session(account)

    async def complete_mfa_login(self, mfa_token: str, code: str) -> LoginResult:
        try:
            challenge = self.verification.peek(mfa_token, TokenPurpose.TWO_FACTOR)
        except InvalidTokenError as exc:
            raise InvalidMfaCodeError() from exc
        # a wrong code leaves the challenge token live for another try
        await self.mfa.challenge(challenge.account_id, code)
        account = self.store.get_account(challenge.account_id)
        if not account or not can_login(account.status):
            raise InvalidMfaCodeError()
        try:
            return self._start_session(account, mfa_token=mfa_token)
        except InvalidTokenError as exc:
            # consumed by a concurrent request between peek and commit
            raise InvalidMfaCodeError() from exc

    async def refresh(self, refresh_token: str) -> Tuple[Account, TokenPair]:
        result = self.codec.verify(refresh_token, TokenKind.REFRESH)
        if not result.valid:
            logger.info("refresh_rejected", reason=result.reason)
            raise InvalidTokenError(status_code=401)
        account_id = result.claims.get("sub")
        account = self.store.get_account(account_id) if isinstance(account_id, str) else None
        if not account or not can_login(account.status):
            logger.info("refresh_rejected", reason="account_unavailable")
            raise InvalidTokenError(status_code=401)
        pair = self.codec.issue_pair(account.id, account.email, self.rbac.role_names(account.id))
        if not self.store.rotate_refresh_token(account.id, refresh_token, pair.refresh_token):
            logger.warning("refresh_token_replayed", account_id=account.id)
            raise InvalidTokenError(status_code=401)
        logger.info("refresh_token_rotated", account_id=account.id)
        return account, pair

    async def logout(self, account_id: str) -> None:
        self.store.set_refresh_token(account_id, None)
        logger.info("logout", account_id=account_id)
        self.audit.record(AuditAction.LOGOUT, account_id=account_id)

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        result = self.codec.verify(token.strip(), TokenKind.ACCESS)
        if not result.valid:
            logger.info("access_token_rejected", reason=result.reason)
            return None
        account_id = result.claims.get("sub")
        account = self.store.get_account(account_id) if isinstance(account_id, str) else None
        if not account or not can_login(account.status):
            return None
        return AuthContext(
            account_id=account.id,
            email=account.email,
            roles=tuple(self.rbac.role_names(account.id)),
        )

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        """Issue and mail a reset token; the caller always sees the same result."""
        account = self.store.get_account_by_email(normalize_email(email))
        if not account or not can_login(account.status):
            logger.info("password_reset_skipped", email_hash=hash_identifier(email))
            return None
        try:
            with self.store.transaction():
                token = self.verification.issue_limited(account.id, TokenPurpose.PASSWORD_RESET)
                self.store.set_password_reset(
                    account.id, _digest(token.token), token.expires_at
                )
        except RateLimitedError:
            logger.warning("password_reset_rate_limited", account_id=account.id)
            return None
        await self._dispatch(
            "password_reset", self.email.send_password_reset, account.email, token.token
        )
        return None

    async def reset_password(self, token: str, new_password: str) -> Account:
        # reject unknown tokens before paying for a password hash
        self.verification.peek(token, TokenPurpose.PASSWORD_RESET)
        password_hash = await self._hash_password(new_password)
        with self.store.transaction():
            account_id = self.verification.consume(token, TokenPurpose.PASSWORD_RESET)
            account = self.store.get_account(account_id)
            if not account or account.password_reset_token != _digest(token):
                raise InvalidTokenError()
            self.store.set_password(account_id, password_hash, clear_reset=True, clear_refresh=True)
        logger.info("password_reset_completed", account_id=account_id)
        self.audit.record(AuditAction.PASSWORD_RESET, account_id=account_id)
        return self.store.get_account(account_id)

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError()
        if not await self._verify_password(account.password_hash, current_password):
            logger.info("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError("current password is incorrect", status_code=400)
        if current_password == new_password:
            raise ValidationError("new password must differ from the current password")
        password_hash = await self._hash_password(new_password)
        with self.store.transaction():
            self.store.set_password(account_id, password_hash, clear_reset=True, clear_refresh=True)
        logger.info("password_changed", account_id=account_id)
        self.audit.record(AuditAction.PASSWORD_CHANGE, account_id=account_id)

    # ------------------------------------------------------------------
    # email verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> Account:
        with self.store.transaction():
            account_id = self.verification.consume(token, TokenPurpose.EMAIL_VERIFICATION)
            account = self.store.get_account(account_id)
            if not account:
                raise InvalidTokenError()
            status = next_status(account.status, StatusEvent.EMAIL_VERIFIED)
            updated = self.store.set_account_status(account_id, status, email_verified=True)
        logger.info("email_verified", account_id=account_id, status=status.value)
        self.audit.record(AuditAction.VERIFY, account_id=account_id, details={"status": status.value})
        return updated

    async def resend_verification(self, email: str) -> None:
        account = self.store.get_account_by_email(normalize_email(email))
        if not account or account.email_verified or not can_login(account.status):
            logger.info("verification_resend_skipped", email_hash=hash_identifier(email))
            return None
        try:
            token = self.verification.issue_limited(account.id, TokenPurpose.EMAIL_VERIFICATION)
        except RateLimitedError:
            logger.warning("verification_resend_rate_limited", account_id=account.id)
            return None
        await self._dispatch(
            "email_verification", self.email.send_email_verification, account.email, token.token
        )
        return None

    # ------------------------------------------------------------------
    # mfa and profile
    # ------------------------------------------------------------------

    async def confirm_mfa(self, account_id: str, code: str) -> Account:
        account = await self.mfa.confirm_enroll(account_id, code)
        self.audit.record(AuditAction.MFA_ENABLE, account_id=account_id)
        await self._dispatch("mfa_enabled", self.email.send_mfa_enabled, account.email)
        return account

    async def disable_mfa(self, account_id: str, code: str) -> None:
        await self.mfa.disable(account_id, code)
        self.audit.record(AuditAction.MFA_DISABLE, account_id=account_id)

    async def get_profile(self, account_id: str) -> Tuple[Account, List[str], List[str]]:
        account = self._require_account(account_id)
        roles = self.rbac.role_names(account_id)
        permissions = [perm.name for perm in self.rbac.resolve_permissions(account_id)]
        return account, roles, permissions

    async def update_profile(self, account_id: str, **changes: Any) -> Account:
        """Apply self-service profile edits; email, password and status are not editable here."""
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(
                "unsupported profile fields", detail={"fields": sorted(unknown)}
            )
        account = self._require_account(account_id)
        changed = {
            key: value for key, value in changes.items() if getattr(account, key) != value
        }
        if not changed:
            return account
        with self.store.transaction():
            updated = self.store.update_account(account_id, **changed)
        if not updated:
            raise NotFoundError("account not found")
        logger.info("profile_updated", account_id=account_id, fields=sorted(changed))
        self.audit.record(
            AuditAction.UPDATE, account_id=account_id, details={"fields": sorted(changed)}
        )
        return updated

    # ------------------------------------------------------------------
    # administration
    # ------------------------------------------------------------------

    async def list_accounts(
        self, *, page: int = 1, page_size: Optional[int] = None
    ) -> AccountPage:
        if page < 1:
            raise ValidationError("page must be at least 1", detail={"field": "page"})
        size = min(page_size or self.settings.default_page_size, self.settings.max_page_size)
        if size < 1:
            raise ValidationError("page_size must be at least 1", detail={"field": "page_size"})
        items = self.store.list_accounts(offset=(page - 1) * size, limit=size)
        return AccountPage(items=items, page=page, page_size=size, total=self.store.count_accounts())

    async def set_account_status(
        self,
        account_id: str,
        event: StatusEvent | str,
        *,
        actor_id: Optional[str] = None,
    ) -> Account:
        with self.store.transaction():
            account = self._require_account(account_id)
            status = next_status(account.status, event)
            updated = self.store.set_account_status(account_id, status)
            if status not in LOGIN_ALLOWED:
                self.store.set_refresh_token(account_id, None)
        logger.info(
            "account_status_changed",
            account_id=account_id,
            status_event=StatusEvent(event).value,
            previous=account.status.value,
            status=status.value,
        )
        self.audit.record(
            AuditAction.STATUS_CHANGE,
            account_id=actor_id or account_id,
            entity_id=account_id,
            details={
                "event": StatusEvent(event).value,
                "previous": account.status.value,
                "status": status.value,
            },
        )
        return updated

    async def delete_account(self, account_id: str, *, actor_id: Optional[str] = None) -> None:
        if actor_id is not None and actor_id == account_id:
            raise ForbiddenError("cannot delete your own account")
        account = self._require_account(account_id)
        self.store.delete_account(account_id)
        logger.info("account_deleted", account_id=account_id)
        self.audit.record(
            AuditAction.DELETE,
            account_id=actor_id,
            entity_id=account_id,
            details={"email_hash": hash_identifier(account.email)},
        )


__all__ = ["AccountPage", "AuthContext", "AuthService", "CredentialStore", "LoginResult"]
