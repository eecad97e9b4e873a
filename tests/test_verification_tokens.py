"""Tests for single-use, time-boxed verification tokens."""

from datetime import timedelta

import pytest

from gemvault.config import get_settings
from gemvault.service.errors import InvalidTokenError, RateLimitedError
from gemvault.service.verification import VerificationManager, generate_token
from gemvault.storage.memory import MemoryStore
from gemvault.storage.models import TokenPurpose, utcnow


class MutableClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def manager(store, clock):
    return VerificationManager(store, get_settings(), clock=clock)


@pytest.fixture
def account(store):
    return store.create_account("holder@example.com", "hash")


def test_generated_tokens_are_64_hex_chars():
    token = generate_token()
    assert len(token) == 64
    int(token, 16)
    assert generate_token() != token


def test_ttl_per_purpose(manager):
    settings = get_settings()
    assert manager.ttl_for(TokenPurpose.EMAIL_VERIFICATION) == timedelta(
        hours=settings.email_verification_ttl_hours
    )
    assert manager.ttl_for(TokenPurpose.PASSWORD_RESET) == timedelta(
        minutes=settings.password_reset_ttl_minutes
    )
    assert manager.ttl_for(TokenPurpose.TWO_FACTOR) == timedelta(
        minutes=settings.two_factor_ttl_minutes
    )


def test_consume_is_single_use(manager, account):
    record = manager.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)
    assert manager.consume(record.token, TokenPurpose.EMAIL_VERIFICATION) == account.id
    with pytest.raises(InvalidTokenError):
        manager.consume(record.token, TokenPurpose.EMAIL_VERIFICATION)


def test_consume_rejects_wrong_purpose(manager, account):
    record = manager.issue(account.id, TokenPurpose.PASSWORD_RESET)
    with pytest.raises(InvalidTokenError):
        manager.consume(record.token, TokenPurpose.EMAIL_VERIFICATION)
    # still usable for its own purpose
    assert manager.consume(record.token, TokenPurpose.PASSWORD_RESET) == account.id


def test_expired_token_rejected(manager, account, clock):
    record = manager.issue(account.id, TokenPurpose.PASSWORD_RESET)
    clock.advance(minutes=get_settings().password_reset_ttl_minutes + 1)
    with pytest.raises(InvalidTokenError):
        manager.consume(record.token, TokenPurpose.PASSWORD_RESET)


@pytest.mark.parametrize("token", ["", "short", "z" * 64, "0" * 63])
def test_malformed_tokens_rejected(manager, token):
    with pytest.raises(InvalidTokenError):
        manager.consume(token, TokenPurpose.EMAIL_VERIFICATION)


def test_reissue_invalidates_previous(manager, account):
    first = manager.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)
    second = manager.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)
    with pytest.raises(InvalidTokenError):
        manager.consume(first.token, TokenPurpose.EMAIL_VERIFICATION)
    active = manager.active_token(account.id, TokenPurpose.EMAIL_VERIFICATION)
    assert active is not None and active.token == second.token


def test_reissue_leaves_other_purposes_alone(manager, account):
    reset = manager.issue(account.id, TokenPurpose.PASSWORD_RESET)
    manager.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)
    assert manager.consume(reset.token, TokenPurpose.PASSWORD_RESET) == account.id


def test_peek_does_not_consume(manager, account):
    record = manager.issue(account.id, TokenPurpose.TWO_FACTOR)
    assert manager.peek(record.token, TokenPurpose.TWO_FACTOR).account_id == account.id
    assert manager.consume(record.token, TokenPurpose.TWO_FACTOR) == account.id
    with pytest.raises(InvalidTokenError):
        manager.peek(record.token, TokenPurpose.TWO_FACTOR)


def test_consume_rolls_back_with_enclosing_transaction(manager, store, account):
    record = manager.issue(account.id, TokenPurpose.PASSWORD_RESET)
    with pytest.raises(RuntimeError):
        with store.transaction():
            manager.consume(record.token, TokenPurpose.PASSWORD_RESET)
            raise RuntimeError("follow-up write failed")
    assert manager.consume(record.token, TokenPurpose.PASSWORD_RESET) == account.id


def test_rate_limit_counts_recent_issues(manager, account, clock):
    settings = get_settings()
    for _ in range(settings.verification_rate_limit_max):
        manager.rate_limit(account.id, TokenPurpose.PASSWORD_RESET)
        manager.issue(account.id, TokenPurpose.PASSWORD_RESET)

    with pytest.raises(RateLimitedError) as excinfo:
        manager.rate_limit(account.id, TokenPurpose.PASSWORD_RESET)
    assert excinfo.value.detail["retry_after_minutes"] == settings.verification_rate_limit_window_minutes

    # a different purpose has its own budget
    manager.rate_limit(account.id, TokenPurpose.EMAIL_VERIFICATION)

    clock.advance(minutes=settings.verification_rate_limit_window_minutes + 1)
    manager.rate_limit(account.id, TokenPurpose.PASSWORD_RESET)


def test_purge_removes_only_expired(manager, account, clock, store):
    old = manager.issue(account.id, TokenPurpose.TWO_FACTOR, ttl=timedelta(minutes=1))
    clock.advance(minutes=5)
    fresh = manager.issue(account.id, TokenPurpose.PASSWORD_RESET)
    assert manager.purge_expired() == 1
    assert store.get_verification_token(old.token) is None
    assert store.get_verification_token(fresh.token) is not None


def test_rate_limit_fires_before_any_write(manager, account, store):
    for _ in range(get_settings().verification_rate_limit_max):
        manager.issue(account.id, TokenPurpose.PASSWORD_RESET)
    before = len(store.verification_tokens)
    with pytest.raises(RateLimitedError):
        manager.rate_limit(account.id, TokenPurpose.PASSWORD_RESET)
    assert len(store.verification_tokens) == before


def test_issue_limited_locks_account_before_counting(manager, account, store, monkeypatch):
    calls = []
    original_lock = store.lock_account
    original_count = store.count_recent_verification_tokens

    def _lock(account_id):
        calls.append(("lock", store._tx_depth))
        return original_lock(account_id)

    def _count(*args):
        calls.append(("count", store._tx_depth))
        return original_count(*args)

    monkeypatch.setattr(store, "lock_account", _lock)
    monkeypatch.setattr(store, "count_recent_verification_tokens", _count)

    record = manager.issue_limited(account.id, TokenPurpose.PASSWORD_RESET)
    assert record.purpose == TokenPurpose.PASSWORD_RESET
    assert [name for name, _ in calls] == ["lock", "count"]
    # both run inside the transaction that also issues the token
    assert all(depth >= 1 for _, depth in calls)


def test_issue_limited_stops_at_limit(manager, account, store):
    limit = get_settings().verification_rate_limit_max
    for _ in range(limit):
        manager.issue_limited(account.id, TokenPurpose.PASSWORD_RESET)
    with pytest.raises(RateLimitedError):
        manager.issue_limited(account.id, TokenPurpose.PASSWORD_RESET)
    issued = [t for t in store.verification_tokens.values() if t.account_id == account.id]
    assert len(issued) == limit
    assert sum(1 for t in issued if not t.used) == 1
