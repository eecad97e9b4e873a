from __future__ import annotations

from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response

from gemvault.api.schemas import (
    AccountPageResponse,
    AccountRoleRequest,
    AccountStatusRequest,
    AccountStatusResponse,
    AuditEventResponse,
    AuthResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    MfaCodeRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PermissionRequest,
    PermissionResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    RolePermissionsRequest,
    RoleRequest,
    RoleResponse,
    RoleUpdateRequest,
    TokenRefreshRequest,
)
from gemvault.logging import get_logger
from gemvault.service.auth import AuthContext, LoginResult
from gemvault.service.errors import ForbiddenError, NotFoundError
from gemvault.service.runtime import check_rate_limit, get_runtime
from gemvault.storage.models import Account, AuditEvent, Permission, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit on ``key``; raises a 429 envelope when exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.info("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "too many requests, try again later",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )

    return info


# ----------------------------------------------------------------------
# dependencies
# ----------------------------------------------------------------------

async def get_account(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return ctx


def require_roles(*role_names: str) -> Callable:
    """Dependency factory: the caller must hold one of ``role_names`` (admin always passes)."""

    async def _dependency(principal: AuthContext = Depends(get_account)) -> AuthContext:
        runtime = get_runtime()
        if not runtime.rbac.has_role(principal.account_id, role_names):
            logger.warning(
                "role_check_denied", account_id=principal.account_id, required=list(role_names)
            )
            raise _http_error("forbidden", "insufficient role", status_code=403)
        return principal

    return _dependency


def require_permission(resource: str, action: str) -> Callable:
    """Dependency factory: the caller must hold ``resource:action`` (admin always passes)."""

    async def _dependency(principal: AuthContext = Depends(get_account)) -> AuthContext:
        runtime = get_runtime()
        if not runtime.rbac.has_permission(principal.account_id, resource, action):
            logger.warning(
                "permission_check_denied",
                account_id=principal.account_id,
                permission=f"{resource}:{action}",
            )
            raise _http_error("forbidden", "insufficient permissions", status_code=403)
        return principal

    return _dependency


# ----------------------------------------------------------------------
# response helpers
# ----------------------------------------------------------------------

def _login_to_response(result: LoginResult) -> AuthResponse:
    if result.mfa_required:
        return AuthResponse(
            user_id=result.account.id,
            mfa_required=True,
            mfa_token=result.mfa_token,
            mfa_token_expires_in=result.mfa_token_expires_in,
        )
    return AuthResponse(
        user_id=result.account.id,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
        roles=result.roles,
    )


def _permission_to_response(perm: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=perm.id,
        resource=perm.resource,
        action=perm.action,
        name=perm.name,
        description=perm.description,
    )


def _role_to_response(role: Role, permissions: Optional[List[Permission]] = None) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        created_at=role.created_at,
        permissions=(
            [_permission_to_response(p) for p in permissions] if permissions is not None else None
        ),
    )


def _profile_to_response(
    account: Account, roles: List[str], permissions: List[str]
) -> ProfileResponse:
    return ProfileResponse(
        id=account.id,
        email=account.email,
        first_name=account.first_name,
        last_name=account.last_name,
        full_name=account.full_name,
        phone=account.phone,
        status=account.status.value,
        email_verified=account.email_verified,
        mfa_enabled=account.mfa_enabled,
        last_login_at=account.last_login_at,
        created_at=account.created_at,
        roles=roles,
        permissions=permissions,
    )


def _audit_to_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        action=event.action,
        entity_type=event.entity_type,
        account_id=event.account_id,
        entity_id=event.entity_id,
        details=event.details,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        request_id=event.request_id,
        created_at=event.created_at,
    )


def _status_to_response(account: Account) -> AccountStatusResponse:
    return AccountStatusResponse(
        user_id=account.id,
        status=account.status.value,
        email_verified=account.email_verified,
    )


def _require_mfa_feature(runtime) -> None:
    if not runtime.settings.enable_mfa:
        raise ForbiddenError("two-factor authentication is disabled")


# ----------------------------------------------------------------------
# authentication
# ----------------------------------------------------------------------

@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a pending account with the default role and mail a verification link.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
        response=response,
    )
    account = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=account.id,
            email=account.email,
            status=account.status.value,
            email_verified=account.email_verified,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Returns a token pair, or an ``mfa_token`` to finish at ``/mfa/verify`` when
    the account has two-factor authentication enabled.

    Raises:
        401: If credentials are invalid
        403: If the account is inactive or suspended
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_login_to_response(result))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest):
    runtime = get_runtime()
    account, pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=account.id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            roles=runtime.rbac.role_names(account.id),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.account_id)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(token: str = Path(..., max_length=256)):
    runtime = get_runtime()
    account = await runtime.auth.verify_email(token)
    return Envelope(status="ok", data=_status_to_response(account))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.resend_verification(body.email)
    # same answer whether or not the address is known
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.request_password_reset(body.email)
    # same answer whether or not the address is known
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    # bounds token guessing across all callers
    await _enforce_rate_limit(
        runtime,
        "reset:confirm",
        runtime.settings.reset_rate_limit_per_minute * 10,
        60,
        response=response,
    )
    await runtime.auth.reset_password(body.token, body.password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_account)
):
    """Change the caller's password; every refresh token is revoked."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    account, roles, permissions = await runtime.auth.get_profile(principal.account_id)
    return Envelope(status="ok", data=_profile_to_response(account, roles, permissions))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, principal: AuthContext = Depends(get_account)):
    """Update the caller's name and phone. Omitted fields are left unchanged."""
    runtime = get_runtime()
    await runtime.auth.update_profile(principal.account_id, **body.model_dump(exclude_unset=True))
    account, roles, permissions = await runtime.auth.get_profile(principal.account_id)
    return Envelope(status="ok", data=_profile_to_response(account, roles, permissions))


# ----------------------------------------------------------------------
# two-factor authentication
# ----------------------------------------------------------------------

@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_account)):
    """Start TOTP enrollment; the secret is held pending until confirmed."""
    runtime = get_runtime()
    _require_mfa_feature(runtime)
    account = runtime.store.get_account(principal.account_id)
    if not account:
        raise NotFoundError("account not found")
    challenge = await runtime.mfa.begin_enroll(account)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=challenge.secret,
            otpauth_url=challenge.otpauth_url,
            qr_code_url=challenge.qr_code_url,
            expires_in=challenge.expires_in,
        ),
    )


@router.post("/mfa/setup/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_setup_confirm(
    body: MfaCodeRequest, response: Response, principal: AuthContext = Depends(get_account)
):
    runtime = get_runtime()
    _require_mfa_feature(runtime)
    await _enforce_rate_limit(
        runtime,
        f"mfa:confirm:{principal.account_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.confirm_mfa(principal.account_id, body.code)
    return Envelope(status="ok", data={"status": "enabled"})


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MfaVerifyRequest, response: Response):
    """Finish a login that answered with ``mfa_required``."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:verify:{body.mfa_token}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.complete_mfa_login(body.mfa_token, body.code)
    return Envelope(status="ok", data=_login_to_response(result))


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaCodeRequest, response: Response, principal: AuthContext = Depends(get_account)
):
    """Disable MFA for the caller. Requires a current TOTP code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:disable:{principal.account_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.disable_mfa(principal.account_id, body.code)
    return Envelope(status="ok", data={"status": "disabled"})


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    state = await runtime.mfa.status(principal.account_id)
    return Envelope(status="ok", data=MfaStatusResponse(**state))


# ----------------------------------------------------------------------
# role and permission administration
# ----------------------------------------------------------------------

_manage_roles = require_permission("role", "manage")


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def admin_list_roles(principal: AuthContext = Depends(_manage_roles)):
    runtime = get_runtime()
    roles = runtime.roles.list_roles()
    return Envelope(status="ok", data={"items": [_role_to_response(r) for r in roles]})


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_role(body: RoleRequest, principal: AuthContext = Depends(_manage_roles)):
    runtime = get_runtime()
    role = runtime.roles.create_role(body.name, body.description)
    return Envelope(status="ok", data=_role_to_response(role, []))


@router.get("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_get_role(role_id: int, principal: AuthContext = Depends(_manage_roles)):
    runtime = get_runtime()
    role, permissions = runtime.roles.get_role_with_permissions(role_id)
    return Envelope(status="ok", data=_role_to_response(role, permissions))


@router.patch("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_update_role(
    role_id: int, body: RoleUpdateRequest, principal: AuthContext = Depends(_manage_roles)
):
    runtime = get_runtime()
    role = runtime.roles.update_role(role_id, name=body.name, description=body.description)
    return Envelope(status="ok", data=_role_to_response(role))


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_role(role_id: int, principal: AuthContext = Depends(_manage_roles)):
    runtime = get_runtime()
    runtime.roles.delete_role(role_id)
    return Envelope(status="ok", data={"deleted": True, "role_id": role_id})


@router.put("/admin/roles/{role_id}/permissions", response_model=Envelope, tags=["admin"])
async def admin_set_role_permissions(
    role_id: int,
    body: RolePermissionsRequest,
    principal: AuthContext = Depends(_manage_roles),
):
    runtime = get_runtime()
    permissions = runtime.roles.set_permissions(role_id, body.permission_ids)
    role = runtime.roles.get_role(role_id)
    return Envelope(status="ok", data=_role_to_response(role, permissions))


@router.get("/admin/permissions", response_model=Envelope, tags=["admin"])
async def admin_list_permissions(principal: AuthContext = Depends(_manage_roles)):
    runtime = get_runtime()
    perms = runtime.roles.list_permissions()
    return Envelope(status="ok", data={"items": [_permission_to_response(p) for p in perms]})


@router.post("/admin/permissions", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_permission(
    body: PermissionRequest, principal: AuthContext = Depends(_manage_roles)
):
    runtime = get_runtime()
    perm = runtime.roles.create_permission(body.resource, body.action, body.description)
    return Envelope(status="ok", data=_permission_to_response(perm))


@router.post("/admin/accounts/{account_id}/roles", response_model=Envelope, tags=["admin"])
async def admin_assign_role(
    account_id: str, body: AccountRoleRequest, principal: AuthContext = Depends(_manage_roles)
):
    runtime = get_runtime()
    role = runtime.roles.assign_role(account_id, body.role, actor_id=principal.account_id)
    return Envelope(
        status="ok",
        data={"user_id": account_id, "role": role.name, "roles": runtime.rbac.role_names(account_id)},
    )


@router.delete(
    "/admin/accounts/{account_id}/roles/{role_name}", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_role(
    account_id: str, role_name: str, principal: AuthContext = Depends(_manage_roles)
):
    runtime = get_runtime()
    removed = runtime.roles.revoke_role(account_id, role_name, actor_id=principal.account_id)
    if not removed:
        raise NotFoundError(
            "role not assigned", detail={"user_id": account_id, "role": role_name}
        )
    return Envelope(
        status="ok",
        data={"user_id": account_id, "roles": runtime.rbac.role_names(account_id)},
    )


# ----------------------------------------------------------------------
# account administration
# ----------------------------------------------------------------------

_admin_only = require_roles("admin")


@router.get("/admin/accounts", response_model=Envelope, tags=["admin"])
async def admin_list_accounts(
    response: Response,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    principal: AuthContext = Depends(_admin_only),
):
    """List accounts, newest first.

    ``page_size`` defaults to ``DEFAULT_PAGE_SIZE`` and is capped at
    ``MAX_PAGE_SIZE``. The total is repeated in the ``X-Total-Count`` header.
    """
    runtime = get_runtime()
    result = await runtime.auth.list_accounts(page=page, page_size=page_size)
    items = [
        _profile_to_response(account, runtime.rbac.role_names(account.id), [])
        for account in result.items
    ]
    response.headers["X-Total-Count"] = str(result.total)
    return Envelope(
        status="ok",
        data=AccountPageResponse(
            items=items,
            page=result.page,
            page_size=result.page_size,
            total=result.total,
            total_pages=result.total_pages,
        ),
    )


@router.get("/admin/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_get_account(account_id: str, principal: AuthContext = Depends(_admin_only)):
    runtime = get_runtime()
    account, roles, permissions = await runtime.auth.get_profile(account_id)
    return Envelope(status="ok", data=_profile_to_response(account, roles, permissions))


@router.post("/admin/accounts/{account_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    account_id: str,
    body: AccountStatusRequest,
    principal: AuthContext = Depends(_admin_only),
):
    runtime = get_runtime()
    account = await runtime.auth.set_account_status(
        account_id, body.event, actor_id=principal.account_id
    )
    return Envelope(status="ok", data=_status_to_response(account))


@router.delete("/admin/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_account(account_id: str, principal: AuthContext = Depends(_admin_only)):
    runtime = get_runtime()
    await runtime.auth.delete_account(account_id, actor_id=principal.account_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": account_id})


@router.get("/admin/audit-events", response_model=Envelope, tags=["admin"])
async def admin_list_audit_events(
    account_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(_admin_only),
):
    """Most recent audit events first, optionally for one acting account."""
    runtime = get_runtime()
    events = runtime.audit.recent(account_id=account_id, limit=limit)
    return Envelope(status="ok", data={"items": [_audit_to_response(e) for e in events]})


__all__ = ["get_account", "require_permission", "require_roles", "router"]
