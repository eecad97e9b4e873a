from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import threading
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote, urlencode

import qrcode
import qrcode.image.svg

from gemvault.config import Settings
from gemvault.logging import get_logger
from gemvault.service.errors import ConflictError, InvalidMfaCodeError, NotFoundError
from gemvault.storage.models import Account

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_WINDOW = 1


# ----------------------------------------------------------------------
# TOTP primitives (RFC 6238, HMAC-SHA1 for authenticator compatibility)
# ----------------------------------------------------------------------

def generate_secret() -> str:
    """160-bit base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: Optional[str],
    *,
    now: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    if not secret or not code:
        return False
    code = code.strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    ts = time.time() if now is None else now
    for step in range(-window, window + 1):
        generated = generate_totp(secret, ts + step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    label = quote(f"{issuer}:{email}")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def qr_data_url(payload: str) -> str:
    """Render ``payload`` as an SVG QR code inside a data URL."""
    qr = qrcode.QRCode(version=None, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(image_factory=qrcode.image.svg.SvgPathImage)
    buffer = BytesIO()
    img.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/svg+xml;base64,{encoded}"


@dataclass(frozen=True)
class EnrollmentChallenge:
    secret: str
    otpauth_url: str
    qr_code_url: str
    expires_in: int


class LocalEphemeralState:
    """In-process TTL map used when Redis is not configured.

    Only for TEST_MODE and ALLOW_REDIS_FALLBACK_DEV; state is lost on restart
    and is not shared between workers.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._pending: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._attempts: Dict[str, Tuple[int, float]] = {}
        self._lockouts: Dict[str, float] = {}

    def set_pending(self, account_id: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._pending[account_id] = (dict(payload), self._clock() + ttl_seconds)

    def get_pending(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._pending.get(account_id)
            if not entry:
                return None
            payload, expires_at = entry
            if expires_at <= self._clock():
                self._pending.pop(account_id, None)
                return None
            return dict(payload)

    def pop_pending(self, account_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._pending.pop(account_id, None)
            if not entry or entry[1] <= self._clock():
                return None
            return dict(entry[0])

    def is_locked(self, account_id: str) -> bool:
        with self._lock:
            until = self._lockouts.get(account_id)
            if until is None:
                return False
            if until <= self._clock():
                self._lockouts.pop(account_id, None)
                return False
            return True

    def record_failure(
        self, account_id: str, max_attempts: int, lockout_seconds: int
    ) -> Tuple[bool, int]:
        with self._lock:
            now = self._clock()
            until = self._lockouts.get(account_id)
            if until is not None and until > now:
                return True, -1
            count, started = self._attempts.get(account_id, (0, now))
            if now - started > lockout_seconds:
                count, started = 0, now
            count += 1
            if count >= max_attempts:
                self._lockouts[account_id] = now + lockout_seconds
                self._attempts.pop(account_id, None)
                return True, count
            self._attempts[account_id] = (count, started)
            return False, count

    def clear_attempts(self, account_id: str) -> None:
        with self._lock:
            self._attempts.pop(account_id, None)


class MfaService:
    """TOTP enrollment and second-factor challenges.

    Pending enrollment secrets live only in the ephemeral store (Redis, or the
    local TTL map) until the first valid code confirms them.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        cache=None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._local = LocalEphemeralState(clock) if cache is None else None

    # ephemeral state ------------------------------------------------------

    async def _set_pending(self, account_id: str, payload: Dict[str, Any]) -> None:
        ttl = self.settings.mfa_pending_ttl_seconds
        if self.cache is not None:
            await self.cache.set_pending_mfa(account_id, payload, ttl)
        else:
            self._local.set_pending(account_id, payload, ttl)

    async def _get_pending(self, account_id: str) -> Optional[Dict[str, Any]]:
        if self.cache is not None:
            return await self.cache.get_pending_mfa(account_id)
        return self._local.get_pending(account_id)

    async def _pop_pending(self, account_id: str) -> Optional[Dict[str, Any]]:
        if self.cache is not None:
            return await self.cache.pop_pending_mfa(account_id)
        return self._local.pop_pending(account_id)

    async def _is_locked(self, account_id: str) -> bool:
        if self.cache is not None:
            return await self.cache.check_mfa_lockout(account_id)
        return self._local.is_locked(account_id)

    async def _record_failure(self, account_id: str) -> None:
        max_attempts = self.settings.mfa_max_attempts
        lockout_seconds = self.settings.mfa_lockout_seconds
        if self.cache is not None:
            locked, attempts = await self.cache.atomic_mfa_attempt(
                account_id, max_attempts, lockout_seconds
            )
        else:
            locked, attempts = self._local.record_failure(
                account_id, max_attempts, lockout_seconds
            )
        if locked:
            logger.warning("mfa_locked_out", account_id=account_id, attempts=attempts)
        else:
            logger.info("mfa_code_rejected", account_id=account_id, attempts=attempts)

    async def _clear_failures(self, account_id: str) -> None:
        if self.cache is not None:
            await self.cache.clear_mfa_attempts(account_id)
        else:
            self._local.clear_attempts(account_id)

    async def _check_code(self, account_id: str, secret: Optional[str], code: str) -> None:
        if await self._is_locked(account_id):
            logger.warning("mfa_attempt_while_locked", account_id=account_id)
            raise InvalidMfaCodeError()
        if not secret or not verify_totp(secret, code, now=self._clock()):
            await self._record_failure(account_id)
            raise InvalidMfaCodeError()
        await self._clear_failures(account_id)

    # operations -----------------------------------------------------------

    async def begin_enroll(self, account: Account) -> EnrollmentChallenge:
        if account.mfa_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = generate_secret()
        uri = provisioning_uri(secret, account.email, self.settings.mfa_issuer)
        await self._set_pending(account.id, {"secret": secret, "email": account.email})
        logger.info("mfa_enrollment_started", account_id=account.id)
        return EnrollmentChallenge(
            secret=secret,
            otpauth_url=uri,
            qr_code_url=qr_data_url(uri),
            expires_in=self.settings.mfa_pending_ttl_seconds,
        )

    async def confirm_enroll(self, account_id: str, code: str) -> Account:
        pending = await self._get_pending(account_id)
        account = self.store.get_account(account_id)
        if not pending or not account or account.mfa_enabled:
            raise InvalidMfaCodeError()
        # a wrong code leaves the pending secret in place for a retry
        await self._check_code(account_id, pending.get("secret"), code)
        with self.store.transaction():
            self.store.set_mfa(account_id, pending["secret"], True)
        await self._pop_pending(account_id)
        logger.info("mfa_enabled", account_id=account_id)
        return self.store.get_account(account_id)

    async def challenge(self, account_id: str, code: str) -> None:
        account = self.store.get_account(account_id)
        if not account or not account.mfa_enabled or not account.mfa_secret:
            # same outcome as a wrong code
            raise InvalidMfaCodeError()
        await self._check_code(account_id, account.mfa_secret, code)

    async def disable(self, account_id: str, code: str) -> None:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if not account.mfa_enabled:
            raise InvalidMfaCodeError()
        await self._check_code(account_id, account.mfa_secret, code)
        with self.store.transaction():
            self.store.set_mfa(account_id, None, False)
        logger.info("mfa_disabled", account_id=account_id)

    async def status(self, account_id: str) -> Dict[str, bool]:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        pending = await self._get_pending(account_id)
        return {"enabled": account.mfa_enabled, "pending": pending is not None}


__all__ = [
    "EnrollmentChallenge",
    "LocalEphemeralState",
    "MfaService",
    "generate_secret",
    "generate_totp",
    "provisioning_uri",
    "qr_data_url",
    "verify_totp",
]
