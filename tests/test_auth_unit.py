"""Unit tests for the credential authority.

Covers password login ordering, the session ledger behind every token,
refresh rotation, password change and reset, and audit entries.
"""

from datetime import datetime, timedelta

import pytest

from portalcore.config import Settings
from portalcore.service.auth import AuthService
from portalcore.service.errors import (
    AccountInactiveError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from portalcore.storage.errors import ConstraintViolation
from portalcore.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(memory_store, settings)


async def _alice(auth_service):
    return await auth_service.create_account("alice@acme.com", "Alice", "P@ss1")


class TestPasswordLogin:
    async def test_login_issues_24h_token_pair(self, auth_service, memory_store):
        await _alice(auth_service)

        result = await auth_service.login("alice@acme.com", "P@ss1", ip="10.0.0.1", user_agent="pytest")

        tokens = result.tokens
        assert tokens.expires_in == 24 * 60 * 60
        assert tokens.token_type == "bearer"
        session = memory_store.get_session_by_access_token(tokens.access_token)
        assert session.refresh_token == tokens.refresh_token
        assert session.expires_at - session.issued_at == timedelta(hours=24)
        assert session.ip == "10.0.0.1"
        assert result.account.last_login_at is not None

    async def test_wrong_password_appends_one_failure_audit(self, auth_service, memory_store):
        await _alice(auth_service)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@acme.com", "wrong")

        entries = memory_store.list_audit_entries(email="alice@acme.com")
        assert len(entries) == 1
        assert entries[0].action == "user.login"
        assert entries[0].status == "failure"
        assert memory_store.sessions == {}

    async def test_unknown_email_is_indistinguishable(self, auth_service, memory_store):
        with pytest.raises(InvalidCredentialsError) as exc:
            await auth_service.login("nobody@acme.com", "whatever")
        assert exc.value.message == "invalid credentials"
        assert memory_store.list_audit_entries(email="nobody@acme.com")[0].status == "failure"

    async def test_email_lookup_is_case_insensitive(self, auth_service):
        await _alice(auth_service)
        result = await auth_service.login("  ALICE@Acme.com ", "P@ss1")
        assert result.account.email == "alice@acme.com"

    async def test_federated_account_cannot_use_password(self, auth_service, memory_store):
        memory_store.create_account("fed@acme.com", is_federated=True, federation_provider="google")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("fed@acme.com", "")

    async def test_inactive_checked_after_password(self, auth_service):
        account = await _alice(auth_service)
        await auth_service.set_account_active(account.id, False)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@acme.com", "wrong")
        with pytest.raises(AccountInactiveError):
            await auth_service.login("alice@acme.com", "P@ss1")

    async def test_login_returns_roles_and_teams(self, auth_service, memory_store):
        account = await _alice(auth_service)
        memory_store.grant_role(account.id, "admin")
        memory_store.add_to_team(account.id, "platform")

        result = await auth_service.login("alice@acme.com", "P@ss1")
        assert result.roles == ["admin"]
        assert result.teams == ["platform"]

    async def test_success_is_audited(self, auth_service, memory_store):
        account = await _alice(auth_service)
        await auth_service.login("alice@acme.com", "P@ss1", ip="1.2.3.4", user_agent="ua")
        entry = memory_store.list_audit_entries(account_id=account.id)[0]
        assert (entry.action, entry.status, entry.resource) == ("user.login", "success", "user")
        assert (entry.ip, entry.user_agent) == ("1.2.3.4", "ua")


class TestAccounts:
    async def test_duplicate_email_rejected(self, auth_service):
        await _alice(auth_service)
        with pytest.raises(ConstraintViolation):
            await auth_service.create_account("Alice@ACME.com", "Other", "x")

    async def test_invalid_email_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.create_account("not-an-email", "", "pw")

    async def test_password_hash_is_argon2id(self, auth_service):
        account = await _alice(auth_service)
        assert account.password_hash.startswith("$argon2id$")
        assert "P@ss1" not in account.password_hash

    async def test_get_missing_account(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_account("missing")

    async def test_deactivation_revokes_sessions(self, auth_service):
        account = await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")
        await auth_service.set_account_active(account.id, False)
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(result.tokens.access_token)


class TestSessionLedger:
    async def test_validate_token_returns_account(self, auth_service):
        account = await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")
        assert await auth_service.validate_token(result.tokens.access_token) == account.id
        fetched = await auth_service.get_account_from_token(result.tokens.access_token)
        assert fetched.email == "alice@acme.com"

    async def test_logout_invalidates_token_before_expiry(self, auth_service, memory_store):
        await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")

        await auth_service.logout(result.tokens.access_token)

        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(result.tokens.access_token)
        assert memory_store.list_audit_entries(action="user.logout")[0].status == "success"

    async def test_logout_is_idempotent(self, auth_service, memory_store):
        await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")
        await auth_service.logout(result.tokens.access_token)
        await auth_service.logout(result.tokens.access_token)
        await auth_service.logout("never-issued")
        assert len(memory_store.list_audit_entries(action="user.logout")) == 1

    async def test_tampered_token_rejected(self, auth_service):
        await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")
        header, payload, signature = result.tokens.access_token.split(".")
        forged = f"{header}.{payload}.{signature[:-2]}xx"
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(forged)
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token("not-a-jwt")

    async def test_token_from_other_secret_rejected(self, auth_service, memory_store):
        await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")
        other = AuthService(memory_store, Settings(jwt_secret="another-secret-value-0123456789-abcdef"))
        with pytest.raises(InvalidTokenError):
            await other.validate_token(result.tokens.access_token)

    async def test_expired_session_row_rejects_token(self, auth_service, memory_store):
        await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")
        session = memory_store.get_session_by_access_token(result.tokens.access_token)
        session.expires_at = datetime.utcnow() - timedelta(seconds=1)
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(result.tokens.access_token)

    async def test_refresh_rotates_both_tokens(self, auth_service, memory_store):
        account = await _alice(auth_service)
        first = (await auth_service.login("alice@acme.com", "P@ss1")).tokens

        second = await auth_service.refresh_token(first.refresh_token)

        assert second.access_token != first.access_token
        assert second.refresh_token != first.refresh_token
        assert await auth_service.validate_token(second.access_token) == account.id
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(first.access_token)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_token(first.refresh_token)
        assert len(memory_store.sessions) == 1

    async def test_refresh_starts_a_fresh_window(self, auth_service, memory_store):
        account = await _alice(auth_service)
        issued = datetime.utcnow() - timedelta(hours=12)
        memory_store.create_session(account.id, "half-access", "half-refresh", issued_at=issued)

        tokens = await auth_service.refresh_token("half-refresh")

        session = memory_store.get_session_by_refresh_token(tokens.refresh_token)
        assert session.issued_at > issued + timedelta(hours=11)
        assert session.expires_at - session.issued_at == timedelta(hours=24)
        assert tokens.expires_in == 86400

    async def test_refresh_unknown_token(self, auth_service):
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_token("unknown")
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_token("")

    async def test_refresh_expired_session_deletes_it(self, auth_service, memory_store):
        account = await _alice(auth_service)
        memory_store.create_session(
            account.id, "old-access", "old-refresh", issued_at=datetime.utcnow() - timedelta(days=2)
        )
        with pytest.raises(SessionExpiredError):
            await auth_service.refresh_token("old-refresh")
        assert memory_store.get_session_by_refresh_token("old-refresh") is None

    async def test_logout_all_and_cleanup(self, auth_service, memory_store):
        account = await _alice(auth_service)
        await auth_service.login("alice@acme.com", "P@ss1")
        await auth_service.login("alice@acme.com", "P@ss1")
        memory_store.create_session(
            account.id, "stale-a", "stale-r", issued_at=datetime.utcnow() - timedelta(days=3)
        )

        assert await auth_service.cleanup_expired_sessions() == 1
        assert await auth_service.logout_all(account.id) == 2
        assert memory_store.sessions == {}


class TestPasswords:
    async def test_change_password_revokes_every_session(self, auth_service, memory_store):
        account = await _alice(auth_service)
        result = await auth_service.login("alice@acme.com", "P@ss1")

        await auth_service.change_password(account.id, "P@ss1", "N3w-pass")

        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(result.tokens.access_token)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@acme.com", "P@ss1")
        assert (await auth_service.login("alice@acme.com", "N3w-pass")).account.id == account.id
        statuses = [e.status for e in memory_store.list_audit_entries(action="user.password_changed")]
        assert statuses == ["success"]

    async def test_change_password_wrong_current(self, auth_service, memory_store):
        account = await _alice(auth_service)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(account.id, "nope", "N3w-pass")
        assert memory_store.list_audit_entries(action="user.password_changed")[0].status == "failure"

    async def test_change_password_rejects_empty_new(self, auth_service):
        account = await _alice(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.change_password(account.id, "P@ss1", "")

    async def test_reset_flow(self, auth_service, memory_store):
        account = await _alice(auth_service)
        session = (await auth_service.login("alice@acme.com", "P@ss1")).tokens

        token = await auth_service.request_password_reset("alice@acme.com")
        assert token
        reset_account = await auth_service.reset_password(token, "Reset-pass-1")

        assert reset_account.id == account.id
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(session.access_token)
        assert await auth_service.login("alice@acme.com", "Reset-pass-1")
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password(token, "Again-pass-2")
        assert memory_store.list_audit_entries(action="user.password_reset")[0].status == "success"

    async def test_reset_request_yields_nothing_for_ineligible(self, auth_service, memory_store):
        assert await auth_service.request_password_reset("nobody@acme.com") is None
        memory_store.create_account("fed@acme.com", is_federated=True, federation_provider="github")
        assert await auth_service.request_password_reset("fed@acme.com") is None
        account = await _alice(auth_service)
        await auth_service.set_account_active(account.id, False)
        assert await auth_service.request_password_reset("alice@acme.com") is None
        assert memory_store.reset_tokens == {}

    async def test_expired_reset_token_rejected(self, auth_service, memory_store):
        account = await _alice(auth_service)
        memory_store.save_password_reset_token(
            "expired", account.id, datetime.utcnow() - timedelta(minutes=1)
        )
        with pytest.raises(InvalidTokenError):
            await auth_service.reset_password("expired", "Reset-pass-1")


def test_list_audit_entries_clamps_limit(auth_service, memory_store):
    for _ in range(3):
        memory_store.record_audit("user.login", "user", "failure", email="x@acme.com")
    assert len(auth_service.list_audit_entries(limit=0)) == 1
    assert len(auth_service.list_audit_entries(limit=5000)) == 3
