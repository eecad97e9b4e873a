import pytest

from gemvault.service.runtime import _mask_url_password, check_rate_limit


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/gemvault", "postgresql://app:***@db/gemvault"),
        ("redis://localhost:6379/0", "redis://localhost:6379/0"),
        ("", ""),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


def test_runtime_uses_memory_store_without_redis(runtime):
    assert runtime.cache is None
    assert runtime.settings.use_memory_store
    assert runtime.store.get_role_by_name(runtime.settings.default_role) is not None


async def test_local_rate_limit_exhausts_bucket(runtime):
    results = [
        await check_rate_limit(runtime, "unit:bucket", 3, 60, return_remaining=True)
        for _ in range(4)
    ]
    assert [allowed for allowed, _, _ in results] == [True, True, True, False]
    assert [remaining for _, remaining, _ in results[:3]] == [2, 1, 0]
    assert results[-1][2] >= 1


async def test_rate_limit_keys_are_independent(runtime):
    assert await check_rate_limit(runtime, "unit:a", 1, 60)
    assert not await check_rate_limit(runtime, "unit:a", 1, 60)
    assert await check_rate_limit(runtime, "unit:b", 1, 60)


async def test_non_positive_limit_disables_limiting(runtime):
    for _ in range(5):
        assert await check_rate_limit(runtime, "unit:off", 0, 60)
