"""Tests for the helpers shared by the memory and postgres backends."""

import inspect
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from gemvault.storage import common, memory, postgres

ROOT = Path(__file__).resolve().parent.parent


def test_normalize_email():
    assert common.normalize_email("  Buyer@Example.COM ") == "buyer@example.com"


def test_ensure_utc():
    naive = datetime(2024, 1, 1, 12, 0)
    assert common.ensure_utc(naive) == naive.replace(tzinfo=timezone.utc)
    offset = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert common.ensure_utc(offset) is offset
    assert common.ensure_utc(None) is None


def test_secret_cipher_round_trip():
    cipher = common.build_secret_cipher("unit-test-key")
    token = cipher.encrypt(b"JBSWY3DPEHPK3PXP")
    assert token != b"JBSWY3DPEHPK3PXP"
    assert common.build_secret_cipher("unit-test-key").decrypt(token) == b"JBSWY3DPEHPK3PXP"


def test_secret_cipher_requires_key():
    with pytest.raises(RuntimeError):
        common.build_secret_cipher("")


def test_permission_description_matches_migration():
    assert common.permission_description("rough_stone", "read") == "Read rough stone"


def test_seed_roles_match_migration():
    sql = (ROOT / "sql" / "001_identity_core.sql").read_text()
    seeded = re.findall(r"\('([a-z_]+)', '([^']+)'\)", sql.split("INSERT INTO role ", 1)[1].split(";", 1)[0])
    assert seeded == list(common.DEFAULT_ROLES)


def test_every_public_helper_is_used_by_a_backend():
    backends = inspect.getsource(memory) + inspect.getsource(postgres)
    helpers = [
        name
        for name, obj in vars(common).items()
        if inspect.isfunction(obj) and obj.__module__ == common.__name__ and not name.startswith("_")
    ]
    # derive_cipher_key is reached through build_secret_cipher
    unused = [
        name for name in helpers if name != "derive_cipher_key" and not re.search(rf"\b{name}\b", backends)
    ]
    assert unused == []
