from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from gemvault.config import Settings
from gemvault.logging import get_logger
from gemvault.service.errors import InvalidTokenError, RateLimitedError
from gemvault.storage.models import TokenPurpose, VerificationToken, utcnow

logger = get_logger(__name__)

_TOKEN_HEX_LEN = 64


def generate_token() -> str:
    """256 bits of randomness, hex encoded."""
    return secrets.token_hex(32)


def _looks_like_token(token: Optional[str]) -> bool:
    if not token or len(token) != _TOKEN_HEX_LEN:
        return False
    try:
        int(token, 16)
    except ValueError:
        return False
    return True


class VerificationManager:
    """Issues and consumes single-use, time-boxed verification tokens.

    For each (account, purpose) at most one token is live: ``issue`` marks the
    outstanding ones used before inserting the replacement.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def ttl_for(self, purpose: TokenPurpose) -> timedelta:
        purpose = TokenPurpose(purpose)
        if purpose is TokenPurpose.EMAIL_VERIFICATION:
            return timedelta(hours=self.settings.email_verification_ttl_hours)
        if purpose is TokenPurpose.PASSWORD_RESET:
            return timedelta(minutes=self.settings.password_reset_ttl_minutes)
        return timedelta(minutes=self.settings.two_factor_ttl_minutes)

    def issue(
        self,
        account_id: str,
        purpose: TokenPurpose,
        ttl: Optional[timedelta] = None,
    ) -> VerificationToken:
        purpose = TokenPurpose(purpose)
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self.ttl_for(purpose))
        with self.store.transaction():
            invalidated = self.store.invalidate_verification_tokens(account_id, purpose, now)
            record = self.store.create_verification_token(
                account_id, generate_token(), purpose, expires_at
            )
        logger.info(
            "verification_token_issued",
            account_id=account_id,
            purpose=purpose.value,
            invalidated=invalidated,
        )
        return record

    def consume(self, token: str, purpose: TokenPurpose) -> str:
        """Mark ``token`` used and return its account id.

        Callers run this inside ``store.transaction()`` together with the state
        change the token authorizes, so a failed follow-up also restores the token.
        """
        purpose = TokenPurpose(purpose)
        if not _looks_like_token(token):
            raise InvalidTokenError()
        record = self.store.consume_verification_token(token, purpose, self._clock())
        if not record:
            logger.info("verification_token_rejected", purpose=purpose.value)
            raise InvalidTokenError()
        return record.account_id

    def peek(self, token: str, purpose: TokenPurpose) -> VerificationToken:
        """Validate without consuming."""
        purpose = TokenPurpose(purpose)
        if not _looks_like_token(token):
            raise InvalidTokenError()
        record = self.store.get_verification_token(token)
        if not record or record.purpose != purpose or not record.is_live(self._clock()):
            raise InvalidTokenError()
        return record

    def rate_limit(
        self,
        account_id: str,
        purpose: TokenPurpose,
        *,
        window_minutes: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        purpose = TokenPurpose(purpose)
        window = (
            window_minutes
            if window_minutes is not None
            else self.settings.verification_rate_limit_window_minutes
        )
        limit = max_tokens if max_tokens is not None else self.settings.verification_rate_limit_max
        since = self._clock() - timedelta(minutes=window)
        recent = self.store.count_recent_verification_tokens(account_id, purpose, since)
        if recent >= limit:
            logger.warning(
                "verification_rate_limited",
                account_id=account_id,
                purpose=purpose.value,
                recent=recent,
            )
            raise RateLimitedError(
                "too many requests, try again later",
                detail={"retry_after_minutes": window},
            )

    def issue_limited(
        self,
        account_id: str,
        purpose: TokenPurpose,
        ttl: Optional[timedelta] = None,
    ) -> VerificationToken:
        """Rate-check and issue in one transaction.

        The account row is locked first, so concurrent requests for the same
        account are counted one after another and cannot overshoot the limit.
        """
        with self.store.transaction():
            self.store.lock_account(account_id)
            self.rate_limit(account_id, purpose)
            return self.issue(account_id, purpose, ttl)

    def active_token(
        self, account_id: str, purpose: TokenPurpose
    ) -> Optional[VerificationToken]:
        return self.store.find_live_verification_token(
            account_id, TokenPurpose(purpose), self._clock()
        )

    def purge_expired(self) -> int:
        removed = self.store.delete_expired_verification_tokens(self._clock())
        if removed:
            logger.info("verification_tokens_purged", removed=removed)
        return removed


__all__ = ["VerificationManager", "generate_token"]
