import importlib.util
from pathlib import Path

from gemvault.storage.models import AccountStatus

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)


def test_generated_password_is_valid():
    for _ in range(5):
        assert bootstrap.validate_password(bootstrap.generate_password())
    assert not bootstrap.validate_password("short")


async def test_creates_active_verified_admin(runtime):
    result = await bootstrap.bootstrap_admin("Root@Example.com", "Sapphire2024")
    assert result["status"] == "created"
    account = runtime.store.get_account(result["user_id"])
    assert account.email == "root@example.com"
    assert account.status == AccountStatus.ACTIVE
    assert account.email_verified
    assert runtime.rbac.is_admin(account.id)

    again = await bootstrap.bootstrap_admin("root@example.com", "Sapphire2024")
    assert again["status"] == "already_admin"


async def test_promotes_existing_account(runtime):
    account = runtime.store.create_account("dealer@example.com", "hash")
    dry = await bootstrap.bootstrap_admin("dealer@example.com", "Sapphire2024", dry_run=True)
    assert dry["status"] == "dry_run"
    assert not runtime.rbac.is_admin(account.id)

    result = await bootstrap.bootstrap_admin("dealer@example.com", "Sapphire2024")
    assert result["status"] == "promoted"
    assert runtime.rbac.is_admin(account.id)
    # password untouched
    assert runtime.store.get_account(account.id).password_hash == "hash"
