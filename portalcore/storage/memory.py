from __future__ import annotations

import json
import os
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from portalcore.logging import get_logger
from portalcore.storage.errors import ConstraintViolation
from portalcore.storage.models import (
    AuditEntry,
    LocalAccount,
    Membership,
    Organization,
    PasswordResetToken,
    Session,
    SSOConfig,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Every public method takes ``_data_lock`` so the store can be shared by the
    threadpool FastAPI runs sync handlers on. When ``state_dir`` is given the
    whole state is snapshotted to JSON after each mutation.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.organizations: Dict[str, Organization] = {}
        self.accounts: Dict[str, LocalAccount] = {}
        self.account_roles: Dict[str, List[str]] = {}
        self.account_teams: Dict[str, List[str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_log: List[AuditEntry] = []
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.sso_configs: Dict[str, SSOConfig] = {}
        self.memberships: Dict[tuple[str, str], Membership] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # organizations
    def create_organization(
        self,
        display_name: str,
        write_endpoint: str,
        read_endpoint: str,
        *,
        sso_enabled: bool = False,
        tenant_id: str | None = None,
    ) -> Organization:
        with self._data_lock:
            org_id = tenant_id or str(uuid.uuid4())
            if org_id in self.organizations:
                raise ConstraintViolation("organization already exists", {"tenant_id": org_id})
            org = Organization(
                tenant_id=org_id,
                display_name=display_name,
                write_endpoint=write_endpoint,
                read_endpoint=read_endpoint,
                sso_enabled=sso_enabled,
            )
            self.organizations[org_id] = org
            self._persist_state()
            return org

    def get_organization(self, tenant_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(tenant_id)

    def list_organizations(self, limit: int = 100) -> List[Organization]:
        with self._data_lock:
            orgs = sorted(self.organizations.values(), key=lambda o: o.created_at)
            return orgs[:limit]

    def update_organization(self, tenant_id: str, **changes: Any) -> Optional[Organization]:
        allowed = {"display_name", "sso_enabled", "write_endpoint", "read_endpoint"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"unsupported organization fields: {sorted(unknown)}")
        with self._data_lock:
            org = self.organizations.get(tenant_id)
            if not org:
                return None
            for name, value in changes.items():
                setattr(org, name, value)
            org.updated_at = datetime.utcnow()
            self._persist_state()
            return org

    def delete_organization(self, tenant_id: str) -> bool:
        with self._data_lock:
            if self.organizations.pop(tenant_id, None) is None:
                return False
            for key in [k for k in self.memberships if k[0] == tenant_id]:
                self.memberships.pop(key, None)
            self._persist_state()
            return True

    # membership
    def add_membership(self, tenant_id: str, account_id: str, role: str = "member") -> Membership:
        with self._data_lock:
            if tenant_id not in self.organizations:
                raise ConstraintViolation("organization not found", {"tenant_id": tenant_id})
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            existing = self.memberships.get((tenant_id, account_id))
            if existing:
                existing.role = role
                membership = existing
            else:
                membership = Membership(tenant_id=tenant_id, account_id=account_id, role=role)
                self.memberships[(tenant_id, account_id)] = membership
            self._persist_state()
            return membership

    def remove_membership(self, tenant_id: str, account_id: str) -> bool:
        with self._data_lock:
            removed = self.memberships.pop((tenant_id, account_id), None) is not None
            if removed:
                self._persist_state()
            return removed

    def list_memberships(self, tenant_id: str) -> List[Membership]:
        with self._data_lock:
            results = [m for (tid, _), m in self.memberships.items() if tid == tenant_id]
            return sorted(results, key=lambda m: m.created_at)

    # accounts
    def create_account(
        self,
        email: str,
        name: str = "",
        *,
        password_hash: str | None = None,
        is_active: bool = True,
        is_federated: bool = False,
        federation_provider: str | None = None,
    ) -> LocalAccount:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = LocalAccount(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
                is_active=is_active,
                is_federated=is_federated,
                federation_provider=federation_provider,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[LocalAccount]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[LocalAccount]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == normalized), None)

    def set_account_active(self, account_id: str, active: bool) -> Optional[LocalAccount]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_active = active
            self._persist_state()
            return account

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            account.password_hash = password_hash
            self._persist_state()

    def touch_last_login(self, account_id: str, when: datetime | None = None) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_login_at = when or datetime.utcnow()
            self._persist_state()

    def grant_role(self, account_id: str, role: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            roles = self.account_roles.setdefault(account_id, [])
            if role not in roles:
                roles.append(role)
                self._persist_state()

    def get_account_roles(self, account_id: str) -> List[str]:
        with self._data_lock:
            return list(self.account_roles.get(account_id, []))

    def add_to_team(self, account_id: str, team: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            teams = self.account_teams.setdefault(account_id, [])
            if team not in teams:
                teams.append(team)
                self._persist_state()

    def get_account_teams(self, account_id: str) -> List[str]:
        with self._data_lock:
            return list(self.account_teams.get(account_id, []))

    # session ledger
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
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            sess = Session.new(
                account_id=account_id,
                access_token=access_token,
                refresh_token=refresh_token,
                ttl_minutes=ttl_minutes,
                ip=ip,
                user_agent=user_agent,
                issued_at=issued_at,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.access_token == access_token), None
            )

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token), None
            )

    def replace_session_tokens(
        self,
        old_refresh_token: str,
        *,
        access_token: str,
        refresh_token: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]:
        """Swap the token pair in place, only if ``old_refresh_token`` is still current."""

        with self._data_lock:
            sess = self.get_session_by_refresh_token(old_refresh_token)
            if sess is None:
                return None
            sess.access_token = access_token
            sess.refresh_token = refresh_token
            sess.issued_at = issued_at
            sess.expires_at = expires_at
            self._persist_state()
            return sess

    def delete_session(self, access_token: str) -> bool:
        with self._data_lock:
            sess = self.get_session_by_access_token(access_token)
            if sess is None:
                return False
            self.sessions.pop(sess.id, None)
            self._persist_state()
            return True

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.account_id == account_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        cutoff = now or datetime.utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(cutoff)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # audit sink
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
    ) -> AuditEntry:
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            action=action,
            resource=resource,
            status=status,
            email=email.strip().lower(),
            account_id=account_id,
            resource_id=resource_id,
            ip=ip,
            user_agent=user_agent,
        )
        with self._data_lock:
            self.audit_log.append(entry)
            self._persist_state()
        return entry

    def list_audit_entries(
        self,
        *,
        account_id: str | None = None,
        email: str | None = None,
        action: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        with self._data_lock:
            results = [
                e
                for e in self.audit_log
                if (account_id is None or e.account_id == account_id)
                and (email is None or e.email == email.strip().lower())
                and (action is None or e.action == action)
                and (status is None or e.status == status)
            ]
        # stable for entries sharing a timestamp: later appends come first
        results.reverse()
        return sorted(results, key=lambda e: e.created_at, reverse=True)[:limit]

    # password reset
    def save_password_reset_token(
        self, token: str, account_id: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            record = PasswordResetToken(token=token, account_id=account_id, expires_at=expires_at)
            self.reset_tokens[token] = record
            self._persist_state()
            return record

    def consume_password_reset_token(
        self, token: str, now: datetime | None = None
    ) -> Optional[PasswordResetToken]:
        """Mark a usable token as used and return it; ``None`` if unknown, used or expired."""

        moment = now or datetime.utcnow()
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if record is None or not record.is_usable(moment):
                return None
            record.used_at = moment
            self._persist_state()
            return record

    # sso provider configuration
    def upsert_sso_config(self, config: SSOConfig) -> SSOConfig:
        with self._data_lock:
            config.updated_at = datetime.utcnow()
            self.sso_configs[config.provider] = config
            self._persist_state()
            return config

    def get_sso_config(self, provider: str) -> Optional[SSOConfig]:
        with self._data_lock:
            return self.sso_configs.get(provider)

    # persistence
    def _state_path(self) -> Path:
        assert self.state_dir is not None
        return self.state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model, data: dict):
        kwargs = {}
        for f in fields(model):
            if f.name not in data:
                continue
            value = data[f.name]
            if isinstance(value, str) and f.name.endswith("_at"):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return model(**kwargs)

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "organizations": [self._serialize(o) for o in self.organizations.values()],
            "accounts": [self._serialize(a) for a in self.accounts.values()],
            "account_roles": self.account_roles,
            "account_teams": self.account_teams,
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "audit_log": [self._serialize(e) for e in self.audit_log],
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
            "sso_configs": [self._serialize(c) for c in self.sso_configs.values()],
            "memberships": [self._serialize(m) for m in self.memberships.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.organizations = {
            o["tenant_id"]: self._deserialize(Organization, o)
            for o in data.get("organizations", [])
        }
        self.accounts = {
            a["id"]: self._deserialize(LocalAccount, a) for a in data.get("accounts", [])
        }
        self.account_roles = data.get("account_roles", {})
        self.account_teams = data.get("account_teams", {})
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.audit_log = [self._deserialize(AuditEntry, e) for e in data.get("audit_log", [])]
        self.reset_tokens = {
            t["token"]: self._deserialize(PasswordResetToken, t)
            for t in data.get("reset_tokens", [])
        }
        self.sso_configs = {
            c["provider"]: self._deserialize(SSOConfig, c) for c in data.get("sso_configs", [])
        }
        self.memberships = {}
        for raw in data.get("memberships", []):
            membership = self._deserialize(Membership, raw)
            self.memberships[(membership.tenant_id, membership.account_id)] = membership
        self.logger.info(
            "memory_store_loaded",
            organizations=len(self.organizations),
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True
