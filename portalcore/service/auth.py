from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from portalcore.config import Settings
from portalcore.logging import get_logger
from portalcore.service.errors import (
    AccountInactiveError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    SessionExpiredError,
    ValidationError,
)
from portalcore.storage.models import AuditEntry, LocalAccount, Session

logger = get_logger(__name__)

AUDIT_RESOURCE_USER = "user"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"


class AuthStore(Protocol):
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

    def get_account(self, account_id: str) -> Optional[LocalAccount]: ...

    def get_account_by_email(self, email: str) -> Optional[LocalAccount]: ...

    def set_account_active(self, account_id: str, active: bool) -> Optional[LocalAccount]: ...

    def set_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def touch_last_login(self, account_id: str, when: datetime | None = None) -> None: ...

    def get_account_roles(self, account_id: str) -> List[str]: ...

    def get_account_teams(self, account_id: str) -> List[str]: ...

    def create_session(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str,
        ttl_minutes: int = 60 * 24,
        ip: str | None = None,
        user_agent: str | None = None,
        *,
        issued_at: datetime | None = None,
    ) -> Session: ...

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def replace_session_tokens(
        self,
        old_refresh_token: str,
        *,
        access_token: str,
        refresh_token: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]: ...

    def delete_session(self, access_token: str) -> bool: ...

    def delete_account_sessions(self, account_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime | None = None) -> int: ...

    def record_audit(
        self,
        action: str,
        resource: str,
        status: str,
        *,
        email: str = "",
        account_id: str | None = None,
        resource_id: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> AuditEntry: ...

    def list_audit_entries(
        self,
        *,
        account_id: str | None = None,
        email: str | None = None,
        action: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> List[AuditEntry]: ...

    def save_password_reset_token(self, token: str, account_id: str, expires_at: datetime): ...

    def consume_password_reset_token(self, token: str, now: datetime | None = None): ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    expires_in: int
    token_type: str = "bearer"


@dataclass
class LoginResult:
    account: LocalAccount
    tokens: TokenPair
    roles: List[str] = field(default_factory=list)
    teams: List[str] = field(default_factory=list)


class AuthService:
    """Credential authority: password logins, token issuance and revocation.

    Every issued token pair is backed by exactly one row in the session
    ledger; ``validate_token`` checks both the signature and that row, which
    is what makes logout effective before a token's signed expiry.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.utcnow()

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes)

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: LocalAccount, password: str) -> bool:
        """Constant-time check of ``password`` against the account's argon2id hash."""
        if not account.can_use_password:
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails cost the same as a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            pass

    @staticmethod
    def _require_password(password: Optional[str], field_name: str = "password") -> str:
        if not password:
            raise ValidationError(f"{field_name} must not be empty", detail={"field": field_name})
        if len(password) > 1024:
            raise ValidationError(f"{field_name} is too long", detail={"field": field_name})
        return password

    # accounts
    async def create_account(
        self,
        email: str,
        name: str = "",
        password: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> LocalAccount:
        """Create a local (password) account. Duplicate emails raise ``ConstraintViolation``."""
        normalized = (email or "").strip().lower()
        if "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        password_hash = self.hash_password(self._require_password(password)) if password else None
        account = self.store.create_account(
            normalized, name, password_hash=password_hash, is_active=is_active
        )
        self.logger.info("account_created", account_id=account.id, federated=False)
        return account

    async def get_account(self, account_id: str) -> LocalAccount:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    async def set_account_active(self, account_id: str, active: bool) -> LocalAccount:
        account = self.store.set_account_active(account_id, active)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        if not active:
            revoked = self.store.delete_account_sessions(account_id)
            self.logger.info("account_deactivated", account_id=account_id, sessions_revoked=revoked)
        return account

    # session minting
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted; anything else is an algorithm-confusion attempt
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _mint_tokens(self, account_id: str, issued_at: datetime) -> TokenPair:
        expires_at = issued_at + self.session_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "iat": int(issued_at.replace(tzinfo=timezone.utc).timestamp()),
            "exp": int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
            # Keeps two pairs minted in the same second distinct
            "jti": str(uuid.uuid4()),
        }
        return TokenPair(
            access_token=self._encode_jwt(payload),
            refresh_token=secrets.token_urlsafe(32),
            expires_at=expires_at,
            expires_in=int(self.session_ttl.total_seconds()),
        )

    def issue_session(
        self,
        account: LocalAccount,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Mint a token pair and persist it as one session row.

        Shared by password and federated login. If the ledger write fails the
        error propagates and the minted tokens are never returned.
        """
        issued_at = self._now()
        tokens = self._mint_tokens(account.id, issued_at)
        self.store.create_session(
            account.id,
            tokens.access_token,
            tokens.refresh_token,
            ttl_minutes=self.settings.session_ttl_minutes,
            ip=ip,
            user_agent=user_agent,
            issued_at=issued_at,
        )
        return tokens

    def audit(
        self,
        action: str,
        status: str,
        *,
        email: str = "",
        account_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditEntry:
        return self.store.record_audit(
            action,
            AUDIT_RESOURCE_USER,
            status,
            email=email or "",
            account_id=account_id,
            resource_id=account_id,
            ip=ip,
            user_agent=user_agent,
        )

    # login / logout
    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = (email or "").strip().lower()
        account = self.store.get_account_by_email(normalized) if normalized else None

        def _reject(reason: str, exc: Exception) -> Exception:
            self.audit(
                "user.login",
                STATUS_FAILURE,
                email=normalized,
                account_id=account.id if account else None,
                ip=ip,
                user_agent=user_agent,
            )
            self.logger.info("login_rejected", reason=reason, account_id=account.id if account else None)
            return exc

        if account is None:
            self._burn_password_check(password or "")
            raise _reject("unknown_email", InvalidCredentialsError())
        if account.is_federated:
            raise _reject("federated_account", InvalidCredentialsError())
        if not self.verify_password(account, password or ""):
            raise _reject("password_mismatch", InvalidCredentialsError())
        if not account.is_active:
            raise _reject("inactive", AccountInactiveError())

        tokens = self.issue_session(account, ip=ip, user_agent=user_agent)
        login_at = self._now()
        self.store.touch_last_login(account.id, login_at)
        account.last_login_at = login_at
        self.audit(
            "user.login",
            STATUS_SUCCESS,
            email=account.email,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("login_succeeded", account_id=account.id)
        return LoginResult(
            account=account,
            tokens=tokens,
            roles=self.store.get_account_roles(account.id),
            teams=self.store.get_account_teams(account.id),
        )

    async def logout(
        self,
        access_token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Delete the session row for ``access_token``; a no-op if it is already gone."""
        session = self.store.get_session_by_access_token(access_token)
        if session is None:
            return
        self.store.delete_session(access_token)
        account = self.store.get_account(session.account_id)
        self.audit(
            "user.logout",
            STATUS_SUCCESS,
            email=account.email if account else "",
            account_id=session.account_id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("logout", account_id=session.account_id)

    async def logout_all(self, account_id: str) -> int:
        revoked = self.store.delete_account_sessions(account_id)
        self.logger.info("logout_all", account_id=account_id, sessions_revoked=revoked)
        return revoked

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        session = self.store.get_session_by_refresh_token(refresh_token) if refresh_token else None
        if session is None:
            raise InvalidTokenError()
        now = self._now()
        if session.is_expired(now):
            self.store.delete_session(session.access_token)
            raise SessionExpiredError()
        tokens = self._mint_tokens(session.account_id, now)
        replaced = self.store.replace_session_tokens(
            refresh_token,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            issued_at=now,
            expires_at=tokens.expires_at,
        )
        if replaced is None:
            # a concurrent refresh consumed the same token first
            raise InvalidTokenError()
        self.logger.info("session_refreshed", account_id=session.account_id)
        return tokens

    async def validate_token(self, access_token: str) -> str:
        """Return the account id behind a live access token."""
        payload = self._decode_jwt(access_token) if access_token else None
        if not payload:
            raise InvalidTokenError()
        session = self.store.get_session_by_access_token(access_token)
        if session is None:
            raise InvalidTokenError("session revoked")
        if session.is_expired(self._now()) or session.account_id != payload.get("sub"):
            raise InvalidTokenError()
        return session.account_id

    async def get_account_from_token(self, access_token: str) -> LocalAccount:
        account_id = await self.validate_token(access_token)
        account = self.store.get_account(account_id)
        if account is None:
            raise InvalidTokenError()
        if not account.is_active:
            raise AccountInactiveError()
        return account

    # passwords
    async def change_password(
        self,
        account_id: str,
        old_password: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        account = await self.get_account(account_id)
        self._require_password(new_password, "new_password")
        if not self.verify_password(account, old_password or ""):
            self.audit(
                "user.password_changed",
                STATUS_FAILURE,
                email=account.email,
                account_id=account.id,
                ip=ip,
                user_agent=user_agent,
            )
            raise InvalidCredentialsError()
        self.store.set_password_hash(account.id, self.hash_password(new_password))
        revoked = self.store.delete_account_sessions(account.id)
        self.audit(
            "user.password_changed",
            STATUS_SUCCESS,
            email=account.email,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("password_changed", account_id=account.id, sessions_revoked=revoked)

    async def request_password_reset(
        self,
        email: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Issue a single-use reset token, or ``None`` for emails that cannot reset.

        Callers must respond identically in both cases.
        """
        account = self.store.get_account_by_email(email or "")
        if account is None or not account.is_active or account.is_federated:
            self.logger.info("password_reset_skipped")
            return None
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.save_password_reset_token(token, account.id, expires_at)
        self.audit(
            "user.password_reset_requested",
            STATUS_SUCCESS,
            email=account.email,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("password_reset_requested", account_id=account.id)
        return token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LocalAccount:
        self._require_password(new_password, "new_password")
        record = self.store.consume_password_reset_token(token, self._now()) if token else None
        if record is None:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidTokenError("invalid or expired reset token")
        account = self.store.get_account(record.account_id)
        if account is None or not account.is_active or account.is_federated:
            raise InvalidTokenError("invalid or expired reset token")
        self.store.set_password_hash(account.id, self.hash_password(new_password))
        revoked = self.store.delete_account_sessions(account.id)
        self.audit(
            "user.password_reset",
            STATUS_SUCCESS,
            email=account.email,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        self.logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)
        return account

    # maintenance
    async def cleanup_expired_sessions(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            self.logger.info("expired_sessions_removed", count=removed)
        return removed

    def list_audit_entries(
        self,
        *,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        action: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        return self.store.list_audit_entries(
            account_id=account_id,
            email=email,
            action=action,
            status=status,
            limit=max(1, min(limit, 1000)),
        )
