"""Tests for runtime wiring and account seeding."""

import json

import pytest

from couponauth.service import runtime as runtime_module
from couponauth.service.runtime import _mask_url_password, get_runtime, reset_runtime_for_tests
from couponauth.storage.memory import MemoryCache, load_account_seed
from couponauth.storage.models import Role


def _write_seed(path, verifier):
    path.write_text(
        json.dumps(
            {
                "company": [
                    {"id": 42, "email": "Shop@Example.com", "name": "Acme Coupons",
                     "password_hash": verifier.hash("CompanyPassword123!")}
                ],
                "customer": [
                    {"id": 7, "email": "customer@test.com", "name": "Casey",
                     "password_hash": verifier.hash("CustomerPassword123!")}
                ],
                "admin": [{"id": 1, "email": "admin@admin.com", "password_hash": "x"}],
            }
        )
    )


def test_seed_file_groups_accounts_by_role(tmp_path, verifier):
    seed = tmp_path / "accounts.json"
    _write_seed(seed, verifier)

    seeded = load_account_seed(str(seed))

    assert set(seeded) == {Role.COMPANY, Role.CUSTOMER}
    assert seeded[Role.COMPANY][0].email == "shop@example.com"
    assert seeded[Role.COMPANY][0].display_name == "Acme Coupons"


async def test_runtime_loads_seed_accounts(monkeypatch, tmp_path, verifier):
    seed = tmp_path / "accounts.json"
    _write_seed(seed, verifier)
    monkeypatch.setenv("ACCOUNT_SEED_PATH", str(seed))

    runtime = reset_runtime_for_tests()

    assert len(runtime.accounts[Role.COMPANY]) == 1
    result = await runtime.auth.login("shop@example.com", "CompanyPassword123!", "company")
    assert result.principal.user_id == 42


def test_runtime_uses_configured_limits(monkeypatch):
    monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("LOCKOUT_DURATION_MINUTES", "10")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")

    runtime = reset_runtime_for_tests()

    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.lockout.max_attempts == 3
    assert runtime.lockout.lockout_seconds == 600
    assert runtime.codec.access_ttl_seconds == 900
    assert get_runtime() is runtime


def test_redis_required_outside_test_mode(monkeypatch):
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    monkeypatch.setenv("REDIS_URL", "")
    runtime_module.reset_settings_cache()

    with pytest.raises(RuntimeError, match="Redis is required"):
        runtime_module.Runtime()


def test_fallback_to_memory_when_allowed(monkeypatch):
    monkeypatch.setenv("USE_MEMORY_STORE", "false")
    monkeypatch.setenv("REDIS_URL", "")

    runtime = reset_runtime_for_tests()

    assert runtime.cache.backend == "memory"


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert _mask_url_password(None) is None


async def test_cleanup_removes_expired_refresh_tokens():
    runtime = get_runtime()
    await runtime.refresh_registry.store("stale", "shop@example.com", Role.COMPANY, 1.0)

    assert await runtime.cleanup_expired() >= 1
    assert await runtime.refresh_registry.metadata_of("stale") is None
