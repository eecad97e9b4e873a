"""Tests for signed access/refresh token issuing and verification."""

import base64
import json

import pytest

from gemvault.service.tokens import TokenCodec, TokenKind, parse_duration


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(
        "access-secret-0123456789abcdef",
        "refresh-secret-0123456789abcdef",
        access_expiry="15m",
        refresh_expiry="7d",
        leeway_seconds=120,
        clock=clock,
    )


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    new_payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{new_payload}.{sig}"


class TestParseDuration:
    def test_units(self):
        assert parse_duration("30s") == 30
        assert parse_duration("15m") == 900
        assert parse_duration("2h") == 7200
        assert parse_duration("7d") == 7 * 86400

    def test_unit_is_required(self):
        assert parse_duration("45", default=10) == 10

    def test_garbage_falls_back_to_default(self):
        assert parse_duration("soon", default=10) == 10
        assert parse_duration(None, default=11) == 11


class TestConstruction:
    def test_rejects_identical_secrets(self):
        with pytest.raises(ValueError):
            TokenCodec("same-secret-value", "same-secret-value")

    def test_rejects_empty_secret(self):
        with pytest.raises(ValueError):
            TokenCodec("", "refresh-secret")


class TestIssueAndVerify:
    def test_pair_round_trip_claims(self, codec):
        pair = codec.issue_pair("acct-1", "buyer@example.com", ["customer"])
        access = codec.verify(pair.access_token, TokenKind.ACCESS)
        refresh = codec.verify(pair.refresh_token, TokenKind.REFRESH)

        assert access.valid and refresh.valid
        assert access.claims["sub"] == "acct-1"
        assert access.claims["email"] == "buyer@example.com"
        assert access.claims["roles"] == ["customer"]
        assert access.claims["token_type"] == "access"
        assert refresh.claims["token_type"] == "refresh"
        assert pair.expires_in == 900
        assert pair.refresh_expires_in == 7 * 86400

    def test_consecutive_pairs_differ(self, codec):
        first = codec.issue_pair("acct-1", "a@example.com", [])
        second = codec.issue_pair("acct-1", "a@example.com", [])
        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token

    def test_access_token_rejected_as_refresh(self, codec):
        pair = codec.issue_pair("acct-1", "a@example.com", [])
        result = codec.verify(pair.access_token, TokenKind.REFRESH)
        assert not result.valid
        # signed with the other secret, so the signature fails first
        assert result.reason == "bad_signature"

    def test_refresh_token_rejected_as_access(self, codec):
        pair = codec.issue_pair("acct-1", "a@example.com", [])
        assert not codec.verify(pair.refresh_token, TokenKind.ACCESS).valid

    def test_tampered_payload_fails_signature(self, codec):
        pair = codec.issue_pair("acct-1", "a@example.com", ["customer"])
        forged = _tamper_payload(pair.access_token, roles=["admin"])
        result = codec.verify(forged, TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "bad_signature"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_malformed_tokens(self, codec, token):
        result = codec.verify(token, TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "malformed"

    def test_access_token_valid_until_expiry(self, codec, clock):
        pair = codec.issue_pair("acct-1", "a@example.com", [])
        clock.now += pair.expires_in - 1
        assert codec.verify(pair.access_token, TokenKind.ACCESS).valid

    @pytest.mark.parametrize("past_expiry", [0, 1, 60])
    def test_access_token_rejected_once_expired(self, codec, clock, past_expiry):
        pair = codec.issue_pair("acct-1", "a@example.com", [])
        # the configured skew allowance must not extend the lifetime
        clock.now += pair.expires_in + past_expiry
        result = codec.verify(pair.access_token, TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "expired"

    def test_refresh_token_rejected_once_expired(self, codec, clock):
        pair = codec.issue_pair("acct-1", "a@example.com", [])
        clock.now += pair.refresh_expires_in + 1
        result = codec.verify(pair.refresh_token, TokenKind.REFRESH)
        assert not result.valid
        assert result.reason == "expired"

    def test_issued_at_within_skew_is_accepted(self, codec, clock):
        token = codec.issue_access_token({"sub": "x"})
        clock.now -= 60
        assert codec.verify(token, TokenKind.ACCESS).valid

    def test_issued_at_beyond_skew_is_rejected(self, codec, clock):
        token = codec.issue_access_token({"sub": "x"})
        clock.now -= 121
        result = codec.verify(token, TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "not_yet_valid"

    def test_wrong_issuer_rejected(self, clock):
        issuer_a = TokenCodec("acc-secret-aaaa", "ref-secret-aaaa", issuer="a", clock=clock)
        issuer_b = TokenCodec("acc-secret-aaaa", "ref-secret-aaaa", issuer="b", clock=clock)
        token = issuer_a.issue_access_token({"sub": "x"})
        result = issuer_b.verify(token, TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "invalid_issuer"

    def test_wrong_audience_rejected(self, clock):
        aud_a = TokenCodec("acc-secret-aaaa", "ref-secret-aaaa", audience="a", clock=clock)
        aud_b = TokenCodec("acc-secret-aaaa", "ref-secret-aaaa", audience="b", clock=clock)
        token = aud_a.issue_access_token({"sub": "x"})
        result = aud_b.verify(token, TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "invalid_audience"

    def test_unsupported_algorithm_rejected(self, codec):
        pair = codec.issue_pair("acct-1", "a@example.com", [])
        _, payload, sig = pair.access_token.split(".")
        none_header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        result = codec.verify(f"{none_header}.{payload}.{sig}", TokenKind.ACCESS)
        assert not result.valid
        assert result.reason == "unsupported_algorithm"
