"""Unit tests for the authentication service.

Tests for:
- Login across admin, company and customer client types
- Lockout interplay with credential checks
- Refresh token rotation
- Bearer token verification
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from couponauth.service.auth import AdminIdentity, AuthService
from couponauth.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    RoleNotFoundError,
)
from couponauth.service.lockout import LockoutManager
from couponauth.service.metrics import AuthMetrics
from couponauth.service.refresh_registry import RefreshTokenRegistry
from couponauth.service.tokens import TokenCodec
from couponauth.storage.memory import MemoryAccountStore, MemoryCache
from couponauth.storage.models import AccountRecord, Role

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
COMPANY_PASSWORD = "CompanyPassword123!"
CUSTOMER_PASSWORD = "CustomerPassword123!"
ADMIN_PASSWORD = "AdminPassword123!"


@pytest.fixture
def metrics():
    return AuthMetrics()


@pytest.fixture
def accounts(verifier):
    return {
        Role.COMPANY: MemoryAccountStore(
            Role.COMPANY,
            [AccountRecord(42, "shop@example.com", "Acme Coupons", verifier.hash(COMPANY_PASSWORD))],
        ),
        Role.CUSTOMER: MemoryAccountStore(
            Role.CUSTOMER,
            [AccountRecord(7, "customer@test.com", "Casey Customer", verifier.hash(CUSTOMER_PASSWORD))],
        ),
    }


class YieldingMemoryCache(MemoryCache):
    """MemoryCache whose refresh-token calls suspend before running."""

    async def put_refresh_token(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().put_refresh_token(*args, **kwargs)

    async def get_refresh_token(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().get_refresh_token(*args, **kwargs)

    async def delete_refresh_token(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().delete_refresh_token(*args, **kwargs)


def _service(cache, clock, verifier, accounts, metrics=None):
    codec = TokenCodec(SECRET, access_ttl_seconds=900, refresh_ttl_seconds=3600, clock=clock)
    return AuthService(
        codec,
        RefreshTokenRegistry(cache, clock=clock),
        LockoutManager(cache, max_attempts=5, lockout_seconds=1800, clock=clock, metrics=metrics),
        accounts=accounts,
        verifier=verifier,
        admin=AdminIdentity(email="admin@admin.com", password_hash=verifier.hash(ADMIN_PASSWORD)),
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def auth_service(clock, verifier, accounts, metrics):
    return _service(MemoryCache(), clock, verifier, accounts, metrics)


class TestEndToEnd:
    """Full login/refresh and lockout/unlock journeys."""

    async def test_company_login_verify_and_rotate(self, auth_service, clock):
        result = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")

        principal = auth_service.verify_request_token(result.access_token)
        assert principal.role is Role.COMPANY
        assert principal.user_id == 42
        assert principal.email == "shop@example.com"

        clock.advance(5)
        rotated = await auth_service.refresh(result.refresh_token)

        assert rotated.refresh_token != result.refresh_token
        assert not await auth_service.registry.is_valid(result.refresh_token)
        assert await auth_service.registry.is_valid(rotated.refresh_token)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(result.refresh_token)

    async def test_customer_lockout_then_admin_unlock(self, auth_service, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("customer@test.com", "wrong-password", "customer")

        with pytest.raises(AccountLockedError) as excinfo:
            await auth_service.login("customer@test.com", CUSTOMER_PASSWORD, "customer")
        assert excinfo.value.locked_until > clock()
        assert excinfo.value.error_code == "account_locked"
        assert excinfo.value.detail["retry_after_seconds"] == 1800

        assert await auth_service.unlock("customer@test.com", "CUSTOMER") is True

        result = await auth_service.login("customer@test.com", CUSTOMER_PASSWORD, "customer")
        assert result.principal.user_id == 7


class TestLogin:
    async def test_login_result_shape(self, auth_service, clock):
        result = await auth_service.login("Shop@Example.com ", COMPANY_PASSWORD, " Company ")
        payload = result.to_dict()

        assert payload["token_type"] == "bearer"
        assert payload["user_info"] == {
            "user_id": 42,
            "email": "shop@example.com",
            "client_type": "company",
            "name": "Acme Coupons",
        }
        entry = await auth_service.registry.metadata_of(result.refresh_token)
        assert entry.role is Role.COMPANY
        assert entry.expires_at == clock() + 3600

    async def test_admin_login(self, auth_service):
        result = await auth_service.login("admin@admin.com", ADMIN_PASSWORD, "admin")

        assert result.principal.user_id == 1
        assert result.principal.display_name == "Administrator"

    async def test_admin_login_disabled_without_hash(self, auth_service):
        auth_service.admin = AdminIdentity(email="admin@admin.com", password_hash=None)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("admin@admin.com", ADMIN_PASSWORD, "admin")

    async def test_unknown_role_touches_nothing(self, auth_service, metrics):
        store = MagicMock()
        auth_service.accounts[Role.COMPANY] = store

        with pytest.raises(RoleNotFoundError):
            await auth_service.login("shop@example.com", COMPANY_PASSWORD, "reseller")

        store.find_by_email.assert_not_called()
        assert metrics.value("couponauth_login_attempts_total", "unknown", "role_not_found") == 1

    async def test_unknown_email_counts_as_failure(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ghost@example.com", "whatever", "customer")

        status = await auth_service.lockout_status("ghost@example.com", "customer")
        assert status.failed_attempts == 1

    async def test_wrong_role_for_account_is_invalid_credentials(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("shop@example.com", COMPANY_PASSWORD, "customer")

    async def test_locked_account_skips_credential_check(self, auth_service):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("shop@example.com", "nope", "company")
        store = MagicMock()
        auth_service.accounts[Role.COMPANY] = store

        with pytest.raises(AccountLockedError):
            await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        store.find_by_email.assert_not_called()

    async def test_lock_lapses_after_duration(self, auth_service, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("shop@example.com", "nope", "company")

        clock.advance(1800)
        await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        status = await auth_service.lockout_status("shop@example.com", "company")
        assert status.failed_attempts == 0

    async def test_success_resets_failure_counter(self, auth_service):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("shop@example.com", "nope", "company")
        await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")

        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("shop@example.com", "nope", "company")
        await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")

    async def test_account_lookup_errors_propagate(self, auth_service):
        store = MagicMock()
        store.find_by_email.side_effect = RuntimeError("database unavailable")
        auth_service.accounts[Role.CUSTOMER] = store

        with pytest.raises(RuntimeError, match="database unavailable"):
            await auth_service.login("customer@test.com", CUSTOMER_PASSWORD, "customer")

    async def test_login_outcomes_are_counted(self, auth_service, metrics):
        await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("shop@example.com", "nope", "company")

        assert metrics.value("couponauth_login_attempts_total", "company", "success") == 1
        assert metrics.value("couponauth_login_attempts_total", "company", "invalid_credentials") == 1


class TestRefresh:
    async def test_refresh_reflects_profile_changes(self, auth_service, accounts, clock, verifier):
        result = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        accounts[Role.COMPANY].add(
            AccountRecord(42, "shop@example.com", "Acme Coupons Ltd", verifier.hash(COMPANY_PASSWORD))
        )

        clock.advance(1)
        rotated = await auth_service.refresh(result.refresh_token)
        assert rotated.principal.display_name == "Acme Coupons Ltd"

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    async def test_refresh_rejects_garbage(self, auth_service, token):
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(token)

    async def test_refresh_rejects_access_token(self, auth_service):
        result = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(result.access_token)

    async def test_refresh_rejects_signed_but_unregistered_token(self, auth_service):
        token = auth_service.codec.issue_refresh_token("shop@example.com")

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(token)

    async def test_refresh_rejects_expired_token(self, auth_service, clock):
        result = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        clock.advance(3600)

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(result.refresh_token)

    async def test_refresh_for_removed_account(self, auth_service, accounts, clock):
        result = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        accounts[Role.COMPANY].remove("shop@example.com")
        clock.advance(1)

        with pytest.raises(NotFoundError):
            await auth_service.refresh(result.refresh_token)
        assert not await auth_service.registry.is_valid(result.refresh_token)

    async def test_losing_a_rotation_race_issues_nothing(self, auth_service, clock):
        result = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        clock.advance(1)
        registry = auth_service.registry
        original_invalidate = registry.invalidate
        issued = []
        original_store = registry.store

        async def recording_store(token, *args, **kwargs):
            issued.append(token)
            await original_store(token, *args, **kwargs)

        async def racing_invalidate(token):
            if token == result.refresh_token:
                # A concurrent rotation claims the old token first
                await original_invalidate(token)
            return await original_invalidate(token)

        registry.store = recording_store
        registry.invalidate = racing_invalidate

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(result.refresh_token)
        assert issued == []

    @pytest.mark.parametrize("advance", [0, 1])
    async def test_concurrent_refresh_winner_keeps_valid_token(self, clock, verifier, accounts, advance):
        # Every cache call yields to the loop, as a network round-trip does
        service = _service(YieldingMemoryCache(), clock, verifier, accounts)
        result = await service.login("shop@example.com", COMPANY_PASSWORD, "company")
        clock.advance(advance)

        outcomes = await asyncio.gather(
            service.refresh(result.refresh_token),
            service.refresh(result.refresh_token),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, InvalidRefreshTokenError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert await service.registry.is_valid(winners[0].refresh_token)
        rotated = await service.refresh(winners[0].refresh_token)
        assert rotated.principal.user_id == 42

    async def test_logout_all_revokes_every_session(self, auth_service, clock):
        first = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")
        clock.advance(1)
        second = await auth_service.login("shop@example.com", COMPANY_PASSWORD, "company")

        assert await auth_service.logout_all("SHOP@example.com") == 2
        for token in (first.refresh_token, second.refresh_token):
            with pytest.raises(InvalidRefreshTokenError):
                await auth_service.refresh(token)


class TestRequestVerification:
    async def test_bearer_header(self, auth_service):
        result = await auth_service.login("customer@test.com", CUSTOMER_PASSWORD, "customer")

        principal = auth_service.authenticate(f"Bearer {result.access_token}")
        assert principal.user_id == 7
        assert principal.role is Role.CUSTOMER

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer garbage"])
    def test_bad_headers(self, auth_service, header):
        assert auth_service.authenticate(header) is None

    async def test_refresh_token_is_not_an_access_token(self, auth_service):
        result = await auth_service.login("customer@test.com", CUSTOMER_PASSWORD, "customer")

        assert auth_service.verify_request_token(result.refresh_token) is None

    async def test_admin_display_name(self, auth_service):
        result = await auth_service.login("admin@admin.com", ADMIN_PASSWORD, "admin")

        principal = auth_service.verify_request_token(result.access_token)
        assert principal.role is Role.ADMIN
        assert principal.display_name == "Administrator"

    async def test_access_token_expires(self, auth_service, clock):
        result = await auth_service.login("customer@test.com", CUSTOMER_PASSWORD, "customer")
        clock.advance(900)

        assert auth_service.verify_request_token(result.access_token) is None
