from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import httpx

from portalcore.config import SUPPORTED_SSO_PROVIDERS, Settings
from portalcore.logging import get_logger, sanitize_error_message
from portalcore.service.auth import STATUS_FAILURE, STATUS_SUCCESS, AuthService
from portalcore.service.errors import (
    AccountConflictError,
    AccountInactiveError,
    CSRFRejectedError,
    DomainNotAllowedError,
    ServiceError,
    SSOProviderError,
    ValidationError,
)
from portalcore.storage.errors import ConstraintViolation
from portalcore.storage.models import LocalAccount, SSOConfig
from portalcore.storage.redis_cache import RedisCache

GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/userinfo.email "
    "https://www.googleapis.com/auth/userinfo.profile"
)
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"


def provider_endpoints(provider: str, directory_tenant: str = "common") -> Dict[str, str]:
    """Authorization, token and user-info endpoints plus scope for ``provider``."""
    if provider == "google":
        return {
            "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
            "token_url": "https://oauth2.googleapis.com/token",
            "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
            "scope": GOOGLE_SCOPES,
        }
    if provider == "microsoft":
        base = f"https://login.microsoftonline.com/{directory_tenant or 'common'}/oauth2/v2.0"
        return {
            "auth_url": f"{base}/authorize",
            "token_url": f"{base}/token",
            "userinfo_url": "https://graph.microsoft.com/v1.0/me",
            "scope": "openid email profile User.Read",
        }
    if provider == "github":
        return {
            "auth_url": "https://github.com/login/oauth/authorize",
            "token_url": "https://github.com/login/oauth/access_token",
            "userinfo_url": "https://api.github.com/user",
            "scope": "read:user user:email",
        }
    raise SSOProviderError("Unsupported SSO provider", detail={"provider": provider})


@dataclass
class ExternalIdentity:
    provider: str
    subject: Optional[str]
    email: str
    name: str = ""
    avatar_url: Optional[str] = None

    @property
    def domain(self) -> str:
        return self.email.rsplit("@", 1)[-1].lower() if "@" in self.email else ""


class SSOStore(Protocol):
    def get_sso_config(self, provider: str) -> Optional[SSOConfig]: ...

    def upsert_sso_config(self, config: SSOConfig) -> SSOConfig: ...

    def get_account_by_email(self, email: str) -> Optional[LocalAccount]: ...

    def create_account(
        self,
        email: str,
        name: str = "",
        *,
        password_hash: str | None = None,
        is_active: bool = True,
        is_federated: bool = False,
        federation_provider: str | None = None,
    ) -> LocalAccount: ...

    def touch_last_login(self, account_id: str, when: datetime | None = None) -> None: ...


class SSOService:
    """OAuth2 authorization-code login that ends in a normal ledger session.

    CSRF state lives in Redis when a cache is configured; otherwise in a
    process-local dict guarded by ``_state_lock`` (single-process dev/tests).
    """

    def __init__(
        self,
        store: SSOStore,
        auth: AuthService,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.auth = auth
        self.cache = cache
        self.settings = settings
        self.logger = get_logger(__name__)
        self._transport = transport
        self._state_lock = threading.Lock()
        self._states: dict[str, tuple[str, datetime]] = {}

    # provider configuration
    def _env_config(self, provider: str) -> SSOConfig:
        client_id = getattr(self.settings, f"oauth_{provider}_client_id", None)
        client_secret = getattr(self.settings, f"oauth_{provider}_client_secret", None)
        return SSOConfig(
            provider=provider,
            enabled=bool(client_id and client_secret),
            client_id=client_id,
            client_secret=client_secret,
            directory_tenant=self.settings.oauth_microsoft_tenant if provider == "microsoft" else None,
            redirect_uri=self.settings.oauth_redirect_uri,
            allowed_domains=list(self.settings.oauth_allowed_domains),
        )

    def get_config(self, provider: str) -> SSOConfig:
        """Stored configuration for ``provider``, else one built from settings."""
        if provider not in SUPPORTED_SSO_PROVIDERS:
            raise SSOProviderError("Unsupported SSO provider", detail={"provider": provider})
        return self.store.get_sso_config(provider) or self._env_config(provider)

    def upsert_config(
        self,
        provider: str,
        *,
        enabled: bool = True,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        directory_tenant: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        allowed_domains: Optional[List[str]] = None,
    ) -> SSOConfig:
        if provider not in SUPPORTED_SSO_PROVIDERS:
            raise SSOProviderError("Unsupported SSO provider", detail={"provider": provider})
        # credentials omitted from an update keep their stored values
        stored = self.store.get_sso_config(provider)
        if stored is not None:
            client_id = client_id or stored.client_id
            client_secret = client_secret or stored.client_secret
        if not client_id or not client_secret:
            raise ValidationError(
                "client_id and client_secret are required", detail={"provider": provider}
            )
        config = SSOConfig(
            provider=provider,
            enabled=enabled,
            client_id=client_id,
            client_secret=client_secret,
            directory_tenant=directory_tenant,
            redirect_uri=redirect_uri,
            allowed_domains=[d.strip().lower() for d in allowed_domains or [] if d.strip()],
        )
        saved = self.store.upsert_sso_config(config)
        self.logger.info("sso_config_saved", provider=provider, enabled=enabled)
        return saved

    def _usable_config(self, provider: str) -> SSOConfig:
        config = self.get_config(provider)
        if not config.enabled:
            raise SSOProviderError("SSO provider is disabled", detail={"provider": provider})
        if not config.is_configured:
            raise SSOProviderError("SSO provider is not configured", detail={"provider": provider})
        return config

    def _redirect_uri(self, provider: str, config: SSOConfig) -> str:
        uri = config.redirect_uri or self.settings.oauth_redirect_uri
        if not uri:
            self.logger.error("sso_no_redirect_uri_configured", provider=provider)
            raise SSOProviderError("No SSO redirect URI configured", detail={"provider": provider})
        return uri.replace("{provider}", provider)

    # CSRF state
    async def _remember_state(self, state: str, provider: str) -> None:
        ttl = self.settings.sso_state_ttl_seconds
        if self.cache:
            await self.cache.set_sso_state(state, provider, ttl)
            return
        now = datetime.utcnow()
        with self._state_lock:
            # drop expired entries so the fallback map cannot grow unbounded
            for key in [k for k, (_, exp) in self._states.items() if exp <= now]:
                self._states.pop(key, None)
            self._states[state] = (provider, now + timedelta(seconds=ttl))

    async def _consume_state(self, state: str) -> Optional[str]:
        if self.cache:
            return await self.cache.pop_sso_state(state)
        with self._state_lock:
            stored = self._states.pop(state, None)
        if stored is None or stored[1] <= datetime.utcnow():
            return None
        return stored[0]

    # flow
    async def begin_login(self, provider: str) -> str:
        """Return the provider authorization URL carrying a fresh single-use state."""
        config = self._usable_config(provider)
        endpoints = provider_endpoints(provider, config.directory_tenant or "common")
        redirect_uri = self._redirect_uri(provider, config)
        state = secrets.token_bytes(32).hex()
        await self._remember_state(state, provider)
        params = {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": endpoints["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "online"
        self.logger.info("sso_login_started", provider=provider)
        return f"{endpoints['auth_url']}?{urlencode(params)}"

    def _frontend(self) -> str:
        return self.settings.frontend_url.rstrip("/")

    def _error_redirect(self, message: str) -> str:
        return f"{self._frontend()}/login?{urlencode({'error': sanitize_error_message(message)})}"

    async def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Finish a provider callback; always returns a frontend redirect URL.

        Success carries ``?token=``; every failure carries ``?error=`` and is
        audited as a failed ``user.sso_login``.
        """
        identity_holder: dict[str, ExternalIdentity] = {}
        try:
            account, access_token = await self._complete(
                provider, code, state, identity_holder, ip=ip, user_agent=user_agent
            )
        except (ServiceError, ConstraintViolation) as exc:
            message = exc.message
            self._audit_failure(provider, identity_holder, exc, ip=ip, user_agent=user_agent)
            return self._error_redirect(message)
        except Exception as exc:
            self.logger.exception("sso_callback_unexpected_error", provider=provider)
            self._audit_failure(provider, identity_holder, exc, ip=ip, user_agent=user_agent)
            return self._error_redirect("SSO login failed")
        self.auth.audit(
            "user.sso_login",
            STATUS_SUCCESS,
            email=account.email,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("sso_login_succeeded", provider=provider, account_id=account.id)
        return f"{self._frontend()}/auth/callback/{provider}?{urlencode({'token': access_token})}"

    def _audit_failure(
        self,
        provider: str,
        identity_holder: dict[str, ExternalIdentity],
        exc: Exception,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        identity = identity_holder.get("identity")
        self.auth.audit(
            "user.sso_login",
            STATUS_FAILURE,
            email=identity.email if identity else "",
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.warning(
            "sso_login_failed",
            provider=provider,
            error_code=getattr(exc, "error_code", type(exc).__name__),
        )

    async def _complete(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        identity_holder: dict[str, ExternalIdentity],
        *,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[LocalAccount, str]:
        if not code:
            raise ValidationError("Missing authorization code")

        if state:
            # popped before the provider check so a mismatched callback also burns it
            bound_provider = await self._consume_state(state)
            if bound_provider != provider:
                self.logger.warning("sso_state_rejected", provider=provider, known=bound_provider is not None)
                raise CSRFRejectedError()
        elif self.settings.sso_require_state:
            raise CSRFRejectedError()

        config = self._usable_config(provider)
        identity = await self._exchange_code(provider, code, config)
        identity_holder["identity"] = identity

        if config.allowed_domains and identity.domain not in config.allowed_domains:
            raise DomainNotAllowedError()

        account = self._resolve_account(provider, identity)
        login_at = datetime.utcnow()
        self.store.touch_last_login(account.id, login_at)
        account.last_login_at = login_at
        tokens = self.auth.issue_session(account, ip=ip, user_agent=user_agent)
        return account, tokens.access_token

    def _resolve_account(self, provider: str, identity: ExternalIdentity) -> LocalAccount:
        account = self.store.get_account_by_email(identity.email)
        if account is None:
            try:
                account = self.store.create_account(
                    identity.email,
                    identity.name,
                    is_active=True,
                    is_federated=True,
                    federation_provider=provider,
                )
                self.logger.info("account_created", account_id=account.id, federated=True, provider=provider)
                return account
            except ConstraintViolation:
                # a concurrent callback created it first
                account = self.store.get_account_by_email(identity.email)
                if account is None:
                    raise
        if not account.is_federated:
            raise AccountConflictError("User exists with local authentication")
        if not account.is_active:
            raise AccountInactiveError("User account is disabled")
        return account

    async def _exchange_code(self, provider: str, code: str, config: SSOConfig) -> ExternalIdentity:
        """Trade ``code`` for a provider access token and fetch the user's identity."""
        endpoints = provider_endpoints(provider, config.directory_tenant or "common")
        token_data = {
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "code": code,
            "redirect_uri": self._redirect_uri(provider, config),
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    endpoints["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = self._json(token_response, provider, "token")
                access_token = token_result.get("access_token")
                if not access_token:
                    self.logger.error("sso_no_access_token", provider=provider)
                    raise SSOProviderError("Failed to exchange authorization code", status_code=502)

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(endpoints["userinfo_url"], headers=userinfo_headers)
                userinfo_response.raise_for_status()
                identity = self._parse_userinfo(
                    provider, self._json(userinfo_response, provider, "userinfo")
                )

                # GitHub hides private emails from /user
                if provider == "github" and not identity.email:
                    emails_response = await client.get(GITHUB_EMAILS_URL, headers=userinfo_headers)
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        primary = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        identity.email = (primary or "").strip().lower()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "sso_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise SSOProviderError("Failed to exchange authorization code", status_code=502) from exc
        except httpx.HTTPError as exc:
            self.logger.error("sso_exchange_transport_error", provider=provider, error=str(exc))
            raise SSOProviderError("SSO provider unreachable", status_code=502) from exc

        if not identity.email:
            self.logger.error("sso_identity_missing_email", provider=provider)
            raise SSOProviderError("Provider did not return an email address", status_code=502)
        self.logger.info("sso_exchange_success", provider=provider)
        return identity

    def _json(self, response: httpx.Response, provider: str, stage: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            self.logger.error("sso_response_parse_error", provider=provider, stage=stage)
            raise SSOProviderError("SSO provider returned an invalid response", status_code=502) from exc
        if not isinstance(body, dict):
            raise SSOProviderError("SSO provider returned an invalid response", status_code=502)
        return body

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: Dict[str, Any]) -> ExternalIdentity:
        if provider == "google":
            email = userinfo.get("email")
            name = userinfo.get("name")
            avatar = userinfo.get("picture")
            subject = userinfo.get("id") or userinfo.get("sub")
        elif provider == "github":
            email = userinfo.get("email")
            name = userinfo.get("name") or userinfo.get("login")
            avatar = userinfo.get("avatar_url")
            subject = userinfo.get("id")
        elif provider == "microsoft":
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
            name = userinfo.get("displayName")
            avatar = None
            subject = userinfo.get("id")
        else:
            raise SSOProviderError("Unsupported SSO provider", detail={"provider": provider})
        normalized = (email or "").strip().lower()
        return ExternalIdentity(
            provider=provider,
            subject=str(subject) if subject is not None else None,
            email=normalized,
            name=name or normalized.split("@")[0],
            avatar_url=avatar,
        )
