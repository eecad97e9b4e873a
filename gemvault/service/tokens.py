from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from gemvault.logging import get_logger

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Optional[str], default: int = 3600) -> int:
    """Convert ``"15m"``/``"7d"`` style durations to seconds.

    Malformed values fall back to ``default`` so a config typo never blocks
    token issuance.
    """
    match = _DURATION_RE.match((value or "").strip())
    if not match:
        logger.warning("duration_invalid", value=value, fallback_seconds=default)
        return default
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        logger.warning("duration_invalid", value=value, fallback_seconds=default)
        return default
    return seconds


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    claims: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _json_segment(value: Dict[str, Any]) -> str:
    return _encode_segment(json.dumps(value, separators=(",", ":")).encode())


class TokenCodec:
    """HS256 access/refresh token codec.

    Access and refresh tokens are signed with different secrets, so a leaked
    access secret cannot mint refresh tokens. ``verify`` reports failures
    through ``VerifyResult.reason`` instead of raising. A token is rejected
    as soon as ``exp`` is reached; ``leeway_seconds`` only bounds how far in
    the future ``iat`` may sit.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_expiry: str = "15m",
        refresh_expiry: str = "7d",
        issuer: str = "gemvault",
        audience: str = "gemvault-clients",
        leeway_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token signing secrets must be non-empty")
        if hmac.compare_digest(access_secret.encode(), refresh_secret.encode()):
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self.access_ttl = parse_duration(access_expiry, default=15 * 60)
        self.refresh_ttl = parse_duration(refresh_expiry, default=7 * 86400)
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _issue(self, claims: Dict[str, Any], kind: TokenKind, ttl: int) -> str:
        now = int(self._clock())
        payload = dict(claims)
        payload.update(
            {
                "iat": now,
                "exp": now + ttl,
                "iss": self.issuer,
                "aud": self.audience,
                # unique per token, so same-second issues never collide
                "jti": secrets.token_hex(16),
                "token_type": kind.value,
            }
        )
        header = {"alg": "HS256", "typ": "JWT"}
        signing_input = f"{_json_segment(header)}.{_json_segment(payload)}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def issue_access_token(self, claims: Dict[str, Any]) -> str:
        return self._issue(claims, TokenKind.ACCESS, self.access_ttl)

    def issue_refresh_token(self, claims: Dict[str, Any]) -> str:
        return self._issue(claims, TokenKind.REFRESH, self.refresh_ttl)

    def issue_pair(self, sub: str, email: str, roles: Iterable[str]) -> TokenPair:
        claims = {"sub": sub, "email": email, "roles": sorted(set(roles))}
        return TokenPair(
            access_token=self.issue_access_token(claims),
            refresh_token=self.issue_refresh_token(claims),
            expires_in=self.access_ttl,
            refresh_expires_in=self.refresh_ttl,
        )

    def verify(self, token: Optional[str], kind: TokenKind | str) -> VerifyResult:
        kind = TokenKind(kind)
        if not token or not isinstance(token, str):
            return VerifyResult(False, reason="malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return VerifyResult(False, reason="malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            return VerifyResult(False, reason="malformed")
        if not isinstance(header, dict):
            return VerifyResult(False, reason="malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return VerifyResult(False, reason="unsupported_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return VerifyResult(False, reason="bad_signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            return VerifyResult(False, reason="malformed")
        if not isinstance(payload, dict):
            return VerifyResult(False, reason="malformed")

        if payload.get("token_type") != kind.value:
            return VerifyResult(False, reason="wrong_token_type")
        if payload.get("iss") != self.issuer:
            return VerifyResult(False, reason="invalid_issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return VerifyResult(False, reason="invalid_audience")
        try:
            exp_ts = float(payload.get("exp"))
            iat_ts = float(payload.get("iat", 0))
        except (TypeError, ValueError):
            return VerifyResult(False, reason="malformed")
        now = self._clock()
        # expiry is exact; the skew allowance only covers an issuer clock running ahead
        if exp_ts <= now:
            return VerifyResult(False, reason="expired")
        if iat_ts > now + self.leeway_seconds:
            return VerifyResult(False, reason="not_yet_valid")
        return VerifyResult(True, claims=payload)


__all__ = ["TokenCodec", "TokenKind", "TokenPair", "VerifyResult", "parse_duration"]
