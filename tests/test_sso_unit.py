from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from portalcore.config import Settings
from portalcore.service.auth import AuthService
from portalcore.logging import sanitize_error_message
from portalcore.service.errors import SSOProviderError, ValidationError
from portalcore.service.sso import SSOService, provider_endpoints
from portalcore.storage.memory import MemoryStore
from portalcore.storage.redis_cache import SyncRedisCache

FRONTEND = "http://portal.test"


def _settings(**overrides):
    values = dict(
        jwt_secret="sso-test-secret-0123456789-abcdefghijklmnop",
        frontend_url=FRONTEND,
        oauth_redirect_uri="http://api.test/v1/auth/sso/{provider}/callback",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_github_client_id="gh-client",
        oauth_github_client_secret="gh-secret",
        oauth_microsoft_client_id="ms-client",
        oauth_microsoft_client_secret="ms-secret",
        oauth_microsoft_tenant="contoso",
    )
    values.update(overrides)
    return Settings(**values)


class ProviderStub:
    """Answers token and user-info calls like a well-behaved provider."""

    def __init__(self, userinfo, *, token_status=200, emails=None):
        self.userinfo = userinfo
        self.token_status = token_status
        self.emails = emails
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if request.method == "POST":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "provider-access", "token_type": "bearer"})
        if url.endswith("/user/emails"):
            return httpx.Response(200, json=self.emails or [])
        return httpx.Response(200, json=self.userinfo)


def _service(handler, settings=None, cache=None):
    settings = settings or _settings()
    store = MemoryStore()
    auth = AuthService(store, settings)
    sso = SSOService(store, auth, cache, settings, transport=httpx.MockTransport(handler))
    return sso, store, auth


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class DictRedis:
    def __init__(self):
        self.data = {}

    def set(self, key, value, ex=None):
        self.data[key] = value

    def getdel(self, key):
        return self.data.pop(key, None)


GOOGLE_USER = {"id": "g-1", "email": "Bob@Acme.com", "name": "Bob", "picture": "http://img"}


async def _begin(sso, provider="google"):
    return _query(await sso.begin_login(provider))["state"]


def test_provider_endpoints_cover_supported_providers():
    assert provider_endpoints("microsoft", "contoso")["token_url"].startswith(
        "https://login.microsoftonline.com/contoso/"
    )
    assert "userinfo.email" in provider_endpoints("google")["scope"]
    assert provider_endpoints("github")["userinfo_url"] == "https://api.github.com/user"
    with pytest.raises(SSOProviderError):
        provider_endpoints("okta")


async def test_begin_login_builds_authorization_url():
    sso, _, _ = _service(ProviderStub(GOOGLE_USER))
    url = await sso.begin_login("google")

    parsed = urlparse(url)
    params = _query(url)
    assert parsed.netloc == "accounts.google.com"
    assert params["client_id"] == "google-client"
    assert params["redirect_uri"] == "http://api.test/v1/auth/sso/google/callback"
    assert params["response_type"] == "code"
    assert len(params["state"]) == 64
    assert params["state"] in sso._states


async def test_callback_creates_federated_account_and_session():
    stub = ProviderStub(GOOGLE_USER)
    sso, store, auth = _service(stub)
    state = await _begin(sso)

    url = await sso.handle_callback("google", "auth-code", state, ip="9.9.9.9", user_agent="browser")

    assert url.startswith(f"{FRONTEND}/auth/callback/google?")
    token = _query(url)["token"]
    account = store.get_account_by_email("bob@acme.com")
    assert account.is_federated and account.federation_provider == "google"
    assert account.password_hash is None
    assert await auth.validate_token(token) == account.id
    assert store.get_session_by_access_token(token).ip == "9.9.9.9"
    token_request = stub.requests[0]
    assert b"grant_type=authorization_code" in token_request.content
    assert stub.requests[1].headers["Authorization"] == "Bearer provider-access"
    entry = store.list_audit_entries(action="user.sso_login")[0]
    assert (entry.status, entry.email) == ("success", "bob@acme.com")


async def test_repeat_login_reuses_account():
    sso, store, _ = _service(ProviderStub(GOOGLE_USER))
    await sso.handle_callback("google", "c1", await _begin(sso))
    await sso.handle_callback("google", "c2", await _begin(sso))
    assert len(store.accounts) == 1
    assert len(store.sessions) == 2


async def test_state_is_single_use():
    sso, store, _ = _service(ProviderStub(GOOGLE_USER))
    state = await _begin(sso)
    await sso.handle_callback("google", "code", state)

    url = await sso.handle_callback("google", "code", state)

    assert url.startswith(f"{FRONTEND}/login?")
    assert _query(url)["error"] == "Invalid SSO session"
    assert len(store.sessions) == 1
    assert store.list_audit_entries(action="user.sso_login")[0].status == "failure"


async def test_state_bound_to_other_provider_rejected():
    sso, store, _ = _service(ProviderStub(GOOGLE_USER))
    state = await _begin(sso, "github")
    url = await sso.handle_callback("google", "code", state)
    assert _query(url)["error"] == "Invalid SSO session"
    assert store.accounts == {}
    # the mismatched attempt consumed the state
    url = await sso.handle_callback("github", "code", state)
    assert _query(url)["error"] == "Invalid SSO session"


async def test_unknown_state_rejected():
    sso, _, _ = _service(ProviderStub(GOOGLE_USER))
    url = await sso.handle_callback("google", "code", "f" * 64)
    assert _query(url)["error"] == "Invalid SSO session"


async def test_missing_state_tolerated_unless_required():
    sso, store, _ = _service(ProviderStub(GOOGLE_USER))
    url = await sso.handle_callback("google", "code", None)
    assert "token" in _query(url)

    strict, strict_store, _ = _service(ProviderStub(GOOGLE_USER), _settings(sso_require_state=True))
    url = await strict.handle_callback("google", "code", None)
    assert _query(url)["error"] == "Invalid SSO session"
    assert strict_store.accounts == {}


async def test_missing_code_redirects_with_error():
    stub = ProviderStub(GOOGLE_USER)
    sso, _, _ = _service(stub)
    url = await sso.handle_callback("google", None, await _begin(sso))
    assert _query(url)["error"] == "Missing authorization code"
    assert stub.requests == []


async def test_domain_allow_list_enforced():
    settings = _settings(oauth_allowed_domains="example.org, Partner.io")
    sso, store, _ = _service(ProviderStub(GOOGLE_USER), settings)

    url = await sso.handle_callback("google", "code", await _begin(sso))

    assert _query(url)["error"] == "Email domain not allowed"
    assert store.accounts == {}
    entry = store.list_audit_entries(action="user.sso_login")[0]
    assert (entry.status, entry.email) == ("failure", "bob@acme.com")


async def test_local_account_with_same_email_conflicts():
    sso, store, auth = _service(ProviderStub(GOOGLE_USER))
    await auth.create_account("bob@acme.com", "Bob", "pw-local")

    url = await sso.handle_callback("google", "code", await _begin(sso))

    assert _query(url)["error"] == "User exists with local authentication"
    assert store.sessions == {}


async def test_disabled_federated_account_rejected():
    sso, store, _ = _service(ProviderStub(GOOGLE_USER))
    account = store.create_account("bob@acme.com", is_federated=True, federation_provider="google")
    store.set_account_active(account.id, False)

    url = await sso.handle_callback("google", "code", await _begin(sso))

    assert _query(url)["error"] == "User account is disabled"
    assert store.sessions == {}


async def test_token_exchange_failure_redirects_with_error():
    sso, store, _ = _service(ProviderStub(GOOGLE_USER, token_status=400))
    url = await sso.handle_callback("google", "bad-code", await _begin(sso))
    assert _query(url)["error"] == "Failed to exchange authorization code"
    assert store.accounts == {}


async def test_unreachable_provider_redirects_with_error():
    def offline(request):
        raise httpx.ConnectError("connection refused", request=request)

    sso, _, _ = _service(offline)
    url = await sso.handle_callback("google", "code", await _begin(sso))
    assert _query(url)["error"] == "SSO provider unreachable"


async def test_github_private_email_falls_back_to_emails_endpoint():
    stub = ProviderStub(
        {"id": 42, "login": "octo", "email": None, "avatar_url": "http://a"},
        emails=[
            {"email": "octo@old.io", "primary": False, "verified": True},
            {"email": "Octo@Acme.com", "primary": True, "verified": True},
        ],
    )
    sso, store, _ = _service(stub)

    url = await sso.handle_callback("github", "code", await _begin(sso, "github"))

    assert "token" in _query(url)
    account = store.get_account_by_email("octo@acme.com")
    assert account.name == "octo"
    assert stub.requests[1].headers["Accept"] == "application/vnd.github+json"


async def test_github_without_any_email_fails():
    stub = ProviderStub({"id": 42, "login": "octo", "email": None}, emails=[])
    sso, store, _ = _service(stub)
    url = await sso.handle_callback("github", "code", await _begin(sso, "github"))
    assert _query(url)["error"] == "Provider did not return an email address"
    assert store.accounts == {}


async def test_microsoft_identity_and_directory_tenant():
    stub = ProviderStub({"id": "m-1", "userPrincipalName": "Dana@Contoso.com", "displayName": "Dana"})
    sso, store, _ = _service(stub)

    url = await sso.begin_login("microsoft")
    assert "/contoso/oauth2/v2.0/authorize" in url
    await sso.handle_callback("microsoft", "code", _query(url)["state"])

    assert str(stub.requests[0].url).startswith("https://login.microsoftonline.com/contoso/")
    assert store.get_account_by_email("dana@contoso.com").name == "Dana"


async def test_stored_config_overrides_environment():
    sso, _, _ = _service(ProviderStub(GOOGLE_USER))
    sso.upsert_config("google", enabled=False, client_id="db-client", client_secret="db-secret")

    with pytest.raises(SSOProviderError) as exc:
        await sso.begin_login("google")
    assert exc.value.message == "SSO provider is disabled"

    sso.upsert_config(
        "google",
        enabled=True,
        client_id="db-client",
        client_secret="db-secret",
        allowed_domains=[" ACME.com "],
    )
    params = _query(await sso.begin_login("google"))
    assert params["client_id"] == "db-client"
    assert sso.get_config("google").allowed_domains == ["acme.com"]


async def test_partial_config_update_keeps_stored_credentials():
    settings = _settings(oauth_google_client_id=None, oauth_google_client_secret=None)
    sso, _, _ = _service(ProviderStub(GOOGLE_USER), settings)
    sso.upsert_config("google", client_id="cid", client_secret="s3cret")

    updated = sso.upsert_config(
        "google",
        client_id="cid",
        redirect_uri="http://api.test/v1/auth/sso/{provider}/callback",
        allowed_domains=["acme.com"],
    )

    assert updated.client_secret == "s3cret"
    assert updated.is_configured
    assert _query(await sso.begin_login("google"))["client_id"] == "cid"

    renamed = sso.upsert_config("google", client_id="cid-2")
    assert (renamed.client_id, renamed.client_secret) == ("cid-2", "s3cret")


def test_config_without_stored_secret_rejected():
    settings = _settings(oauth_github_client_id=None, oauth_github_client_secret=None)
    sso, store, _ = _service(ProviderStub(GOOGLE_USER), settings)
    with pytest.raises(ValidationError):
        sso.upsert_config("github", client_id="cid", allowed_domains=["acme.com"])
    with pytest.raises(ValidationError):
        sso.upsert_config("github", client_secret="secret")
    assert store.get_sso_config("github") is None


async def test_non_json_provider_response_keeps_readable_error():
    def garbled(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    sso, _, _ = _service(garbled)
    url = await sso.handle_callback("google", "code", await _begin(sso))
    assert _query(url)["error"] == "SSO provider returned an invalid response"


def test_error_sanitizer_matches_whole_words_only():
    assert sanitize_error_message("selection fromage") == "selection fromage"
    assert sanitize_error_message("Invalid response from SSO provider") == "Invalid response [redacted]"
    assert "users" not in sanitize_error_message("error: select * from users")


async def test_unconfigured_and_unsupported_providers():
    settings = _settings(oauth_google_client_id=None, oauth_google_client_secret=None)
    sso, _, _ = _service(ProviderStub(GOOGLE_USER), settings)
    with pytest.raises(SSOProviderError):
        await sso.begin_login("google")
    with pytest.raises(SSOProviderError):
        await sso.begin_login("okta")
    url = await sso.handle_callback("okta", "code", None)
    assert _query(url)["error"] == "Unsupported SSO provider"


async def test_state_held_in_redis_when_configured():
    fake = DictRedis()
    cache = SyncRedisCache("redis://unused", client=fake)
    sso, _, _ = _service(ProviderStub(GOOGLE_USER), cache=cache)

    state = await _begin(sso)
    assert sso._states == {}
    assert fake.data == {f"sso:state:{state}": "google"}

    url = await sso.handle_callback("google", "code", state)
    assert "token" in _query(url)
    assert fake.data == {}
