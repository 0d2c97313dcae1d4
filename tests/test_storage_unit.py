from datetime import datetime, timedelta

import pytest

from portalcore.storage.errors import ConstraintViolation
from portalcore.storage.memory import MemoryStore
from portalcore.storage.models import SSOConfig, tenant_schema_name


@pytest.fixture
def store():
    return MemoryStore()


def _org(store, name="Acme"):
    return store.create_organization(name, "postgresql://db/app", "postgresql://db/app")


def test_tenant_schema_name_normalizes_identifier():
    assert tenant_schema_name("0b7c-41aa") == "0b7c_41aa"
    assert tenant_schema_name('x"; DROP SCHEMA public; --') == "x___DROP_SCHEMA_public____"
    assert tenant_schema_name("café") == "caf_"


def test_organization_schema_name_follows_tenant_id(store):
    org = store.create_organization("Acme", "w", "r", tenant_id="1234-abcd")
    assert org.schema_name == "1234_abcd"


def test_create_account_email_is_unique_case_insensitive(store):
    account = store.create_account("Alice@Acme.com", "Alice")
    assert account.email == "alice@acme.com"
    assert store.get_account_by_email("ALICE@acme.com").id == account.id
    with pytest.raises(ConstraintViolation):
        store.create_account("alice@ACME.com")


def test_update_organization_rejects_unknown_fields(store):
    org = _org(store)
    with pytest.raises(ValueError):
        store.update_organization(org.tenant_id, tenant_id="other")
    assert store.update_organization("missing", display_name="x") is None


def test_delete_organization_removes_memberships(store):
    org = _org(store)
    account = store.create_account("bob@acme.com")
    store.add_membership(org.tenant_id, account.id, "owner")
    assert [m.role for m in store.list_memberships(org.tenant_id)] == ["owner"]

    assert store.delete_organization(org.tenant_id) is True
    assert store.list_memberships(org.tenant_id) == []
    assert store.delete_organization(org.tenant_id) is False


def test_add_membership_requires_existing_rows(store):
    org = _org(store)
    with pytest.raises(ConstraintViolation):
        store.add_membership(org.tenant_id, "no-such-account")
    account = store.create_account("carol@acme.com")
    with pytest.raises(ConstraintViolation):
        store.add_membership("no-such-org", account.id)


def test_add_membership_upserts_role(store):
    org = _org(store)
    account = store.create_account("dave@acme.com")
    store.add_membership(org.tenant_id, account.id, "member")
    store.add_membership(org.tenant_id, account.id, "admin")
    members = store.list_memberships(org.tenant_id)
    assert len(members) == 1
    assert members[0].role == "admin"


def test_replace_session_tokens_only_swaps_current_token(store):
    account = store.create_account("erin@acme.com")
    issued = datetime.utcnow()
    store.create_session(account.id, "a1", "r1", issued_at=issued)

    later = issued + timedelta(minutes=5)
    swapped = store.replace_session_tokens(
        "r1", access_token="a2", refresh_token="r2", issued_at=later, expires_at=later + timedelta(days=1)
    )
    assert swapped is not None
    assert store.get_session_by_access_token("a1") is None
    assert store.get_session_by_refresh_token("r2").access_token == "a2"

    replay = store.replace_session_tokens(
        "r1", access_token="a3", refresh_token="r3", issued_at=later, expires_at=later
    )
    assert replay is None
    assert len(store.sessions) == 1


def test_session_expiry_is_issued_at_plus_ttl(store):
    account = store.create_account("frank@acme.com")
    issued = datetime(2024, 1, 1, 12, 0, 0)
    sess = store.create_session(account.id, "a", "r", ttl_minutes=1440, issued_at=issued)
    assert sess.expires_at == datetime(2024, 1, 2, 12, 0, 0)
    assert sess.is_expired(datetime(2024, 1, 2, 12, 0, 0))
    assert not sess.is_expired(datetime(2024, 1, 2, 11, 59, 59))


def test_delete_expired_and_account_sessions(store):
    account = store.create_account("gina@acme.com")
    old = datetime.utcnow() - timedelta(days=2)
    store.create_session(account.id, "old-a", "old-r", issued_at=old)
    store.create_session(account.id, "new-a", "new-r")
    other = store.create_account("hank@acme.com")
    store.create_session(other.id, "other-a", "other-r")

    assert store.delete_expired_sessions() == 1
    assert store.get_session_by_access_token("old-a") is None
    assert store.delete_account_sessions(account.id) == 1
    assert store.get_session_by_access_token("other-a") is not None


def test_audit_entries_newest_first_with_filters(store):
    store.record_audit("user.login", "user", "failure", email="Alice@Acme.com")
    store.record_audit("user.login", "user", "success", email="alice@acme.com", account_id="a-1")
    store.record_audit("user.logout", "user", "success", email="alice@acme.com", account_id="a-1")

    entries = store.list_audit_entries(email="alice@acme.com")
    assert [e.action for e in entries] == ["user.logout", "user.login", "user.login"]
    assert [e.status for e in store.list_audit_entries(status="failure")] == ["failure"]
    assert len(store.list_audit_entries(account_id="a-1", action="user.login")) == 1
    assert len(store.list_audit_entries(limit=2)) == 2


def test_password_reset_token_is_single_use(store):
    account = store.create_account("ivy@acme.com")
    now = datetime.utcnow()
    store.save_password_reset_token("tok", account.id, now + timedelta(minutes=60))

    record = store.consume_password_reset_token("tok", now)
    assert record is not None and record.account_id == account.id
    assert store.consume_password_reset_token("tok", now) is None
    assert store.consume_password_reset_token("unknown", now) is None


def test_password_reset_token_expires(store):
    account = store.create_account("jack@acme.com")
    now = datetime.utcnow()
    store.save_password_reset_token("tok", account.id, now + timedelta(minutes=1))
    assert store.consume_password_reset_token("tok", now + timedelta(minutes=2)) is None


def test_state_survives_reload(tmp_path):
    first = MemoryStore(state_dir=str(tmp_path))
    org = _org(first)
    account = first.create_account("kim@acme.com", "Kim", password_hash="hash")
    first.grant_role(account.id, "admin")
    first.add_membership(org.tenant_id, account.id, "owner")
    first.create_session(account.id, "acc", "ref")
    first.record_audit("user.login", "user", "success", email="kim@acme.com")
    first.upsert_sso_config(SSOConfig(provider="google", client_id="cid", client_secret="s"))

    second = MemoryStore(state_dir=str(tmp_path))
    assert second.get_organization(org.tenant_id).display_name == "Acme"
    assert second.get_account_by_email("kim@acme.com").password_hash == "hash"
    assert second.get_account_roles(account.id) == ["admin"]
    assert second.list_memberships(org.tenant_id)[0].role == "owner"
    sess = second.get_session_by_access_token("acc")
    assert isinstance(sess.expires_at, datetime)
    assert second.list_audit_entries()[0].email == "kim@acme.com"
    assert second.get_sso_config("google").is_configured
