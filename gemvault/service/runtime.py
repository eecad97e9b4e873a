from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from gemvault.config import get_settings, reset_settings_cache
from gemvault.logging import get_logger
from gemvault.service.audit import AuditTrail
from gemvault.service.auth import AuthService
from gemvault.service.email import EmailService
from gemvault.service.mfa import MfaService
from gemvault.service.rbac import RBACResolver, RoleManager
from gemvault.service.tokens import TokenCodec
from gemvault.service.verification import VerificationManager
from gemvault.storage.memory import MemoryStore
from gemvault.storage.postgres import PostgresStore
from gemvault.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                    persist=self.settings.memory_store_persist,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_encryption_key,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and pending MFA state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.codec = TokenCodec(
            self.settings.jwt_access_secret,
            self.settings.jwt_refresh_secret,
            access_expiry=self.settings.access_token_expiry,
            refresh_expiry=self.settings.refresh_token_expiry,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_clock_skew_seconds,
        )
        self.verification = VerificationManager(self.store, self.settings)
        self.audit = AuditTrail(self.store)
        self.rbac = RBACResolver(self.store)
        self.roles = RoleManager(
            self.store, default_role=self.settings.default_role, audit=self.audit
        )
        self.mfa = MfaService(self.store, self.settings, self.cache)
        self.email = EmailService.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.codec,
            self.verification,
            self.rbac,
            self.mfa,
            self.email,
            self.settings,
            audit=self.audit,
        )

        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            mfa_enabled=self.settings.enable_mfa,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous, runtime = runtime, None
        if previous is not None and previous.cache is not None:
            try:
                asyncio.run(previous.cache.close())
            except RuntimeError as exc:
                # called from inside a running loop; the old client is dropped
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or by process memory without it.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = ["Runtime", "check_rate_limit", "get_runtime", "reset_runtime_for_tests"]
