from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from portalcore.logging import get_logger
from portalcore.storage.errors import ConstraintViolation, MissingSchemaError
from portalcore.storage.models import (
    AuditEntry,
    LocalAccount,
    Membership,
    Organization,
    PasswordResetToken,
    Session,
    SSOConfig,
)

REQUIRED_TABLES = (
    "organizations",
    "accounts",
    "account_roles",
    "account_teams",
    "sessions",
    "audit_log",
    "password_reset_tokens",
    "sso_configs",
    "memberships",
)

_ORG_COLUMNS = {"display_name", "sso_enabled", "write_endpoint", "read_endpoint"}


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


class PostgresStore:
    """Platform store backed by Postgres (see ``schema/platform.sql``)."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise MissingSchemaError(missing)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _row_to_organization(row: Dict[str, Any]) -> Organization:
        return Organization(
            tenant_id=str(row["tenant_id"]),
            display_name=row["display_name"],
            write_endpoint=row["write_endpoint"],
            read_endpoint=row["read_endpoint"],
            sso_enabled=bool(row.get("sso_enabled")),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> LocalAccount:
        return LocalAccount(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            password_hash=row.get("password_hash"),
            is_active=bool(row.get("is_active", True)),
            is_federated=bool(row.get("is_federated", False)),
            federation_provider=row.get("federation_provider"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            account_id=str(row["account_id"]),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _row_to_audit(row: Dict[str, Any]) -> AuditEntry:
        account_id = row.get("account_id")
        return AuditEntry(
            id=str(row["id"]),
            action=row["action"],
            resource=row["resource"],
            status=row["status"],
            email=row.get("email") or "",
            account_id=str(account_id) if account_id else None,
            resource_id=row.get("resource_id"),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _row_to_sso_config(row: Dict[str, Any]) -> SSOConfig:
        return SSOConfig(
            provider=row["provider"],
            enabled=bool(row.get("enabled", True)),
            client_id=row.get("client_id"),
            client_secret=row.get("client_secret"),
            directory_tenant=row.get("directory_tenant"),
            redirect_uri=row.get("redirect_uri"),
            allowed_domains=list(row.get("allowed_domains") or []),
            updated_at=row.get("updated_at") or datetime.utcnow(),
        )

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
        org_id = tenant_id or str(uuid.uuid4())
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO organizations (tenant_id, display_name, sso_enabled, write_endpoint, read_endpoint, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (org_id, display_name, sso_enabled, write_endpoint, read_endpoint, now, now),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("organization already exists", {"tenant_id": org_id})
        return Organization(
            tenant_id=org_id,
            display_name=display_name,
            write_endpoint=write_endpoint,
            read_endpoint=read_endpoint,
            sso_enabled=sso_enabled,
            created_at=now,
            updated_at=now,
        )

    def get_organization(self, tenant_id: str) -> Optional[Organization]:
        if not _is_uuid(tenant_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organizations WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        return self._row_to_organization(row) if row else None

    def list_organizations(self, limit: int = 100) -> List[Organization]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organizations ORDER BY created_at ASC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_organization(r) for r in rows]

    def update_organization(self, tenant_id: str, **changes: Any) -> Optional[Organization]:
        unknown = set(changes) - _ORG_COLUMNS
        if unknown:
            raise ValueError(f"unsupported organization fields: {sorted(unknown)}")
        if not _is_uuid(tenant_id):
            return None
        if not changes:
            return self.get_organization(tenant_id)
        # column names come from the fixed allow-list above
        assignments = ", ".join(f"{name} = %s" for name in changes)
        params = list(changes.values()) + [datetime.utcnow(), tenant_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE organizations SET {assignments}, updated_at = %s WHERE tenant_id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_organization(row) if row else None

    def delete_organization(self, tenant_id: str) -> bool:
        if not _is_uuid(tenant_id):
            return False
        with self._connect() as conn:
            # memberships cascade through the foreign key
            cur = conn.execute("DELETE FROM organizations WHERE tenant_id = %s", (tenant_id,))
        return cur.rowcount > 0

    # membership
    def add_membership(self, tenant_id: str, account_id: str, role: str = "member") -> Membership:
        if not _is_uuid(tenant_id) or not _is_uuid(account_id):
            raise ConstraintViolation(
                "organization or account not found",
                {"tenant_id": tenant_id, "account_id": account_id},
            )
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO memberships (tenant_id, account_id, role, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (tenant_id, account_id) DO UPDATE SET role = EXCLUDED.role
                    RETURNING tenant_id, account_id, role, created_at
                    """,
                    (tenant_id, account_id, role, now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organization or account not found",
                {"tenant_id": tenant_id, "account_id": account_id},
            )
        return Membership(
            tenant_id=str(row["tenant_id"]),
            account_id=str(row["account_id"]),
            role=row["role"],
            created_at=row.get("created_at") or now,
        )

    def remove_membership(self, tenant_id: str, account_id: str) -> bool:
        if not _is_uuid(tenant_id) or not _is_uuid(account_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM memberships WHERE tenant_id = %s AND account_id = %s",
                (tenant_id, account_id),
            )
        return cur.rowcount > 0

    def list_memberships(self, tenant_id: str) -> List[Membership]:
        if not _is_uuid(tenant_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM memberships WHERE tenant_id = %s ORDER BY created_at ASC",
                (tenant_id,),
            ).fetchall()
        return [
            Membership(
                tenant_id=str(r["tenant_id"]),
                account_id=str(r["account_id"]),
                role=r["role"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

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
        account_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO accounts (id, email, name, password_hash, is_active, is_federated, federation_provider, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        normalized,
                        name,
                        password_hash,
                        is_active,
                        is_federated,
                        federation_provider,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return LocalAccount(
            id=account_id,
            email=normalized,
            name=name,
            password_hash=password_hash,
            is_active=is_active,
            is_federated=is_federated,
            federation_provider=federation_provider,
            created_at=now,
        )

    def get_account(self, account_id: str) -> Optional[LocalAccount]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = %s", (account_id,)).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[LocalAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE lower(email) = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def set_account_active(self, account_id: str, active: bool) -> Optional[LocalAccount]:
        if not _is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE accounts SET is_active = %s WHERE id = %s RETURNING *",
                (active, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE accounts SET password_hash = %s WHERE id = %s",
                (password_hash, account_id),
            )
        if cur.rowcount == 0:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    def touch_last_login(self, account_id: str, when: datetime | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE accounts SET last_login_at = %s WHERE id = %s",
                (when or datetime.utcnow(), account_id),
            )

    def grant_role(self, account_id: str, role: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO account_roles (account_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                    (account_id, role),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    def get_account_roles(self, account_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM account_roles WHERE account_id = %s ORDER BY role", (account_id,)
            ).fetchall()
        return [r["role"] for r in rows]

    def add_to_team(self, account_id: str, team: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO account_teams (account_id, team) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                    (account_id, team),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    def get_account_teams(self, account_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT team FROM account_teams WHERE account_id = %s ORDER BY team", (account_id,)
            ).fetchall()
        return [r["team"] for r in rows]

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
        sess = Session.new(
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            ttl_minutes=ttl_minutes,
            ip=ip,
            user_agent=user_agent,
            issued_at=issued_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, access_token, refresh_token, account_id, ip, user_agent, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.access_token,
                        sess.refresh_token,
                        sess.account_id,
                        sess.ip,
                        sess.user_agent,
                        sess.issued_at,
                        sess.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session account missing", {"account_id": account_id})
        return sess

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE access_token = %s", (access_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def replace_session_tokens(
        self,
        old_refresh_token: str,
        *,
        access_token: str,
        refresh_token: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]:
        """Swap the token pair in one statement keyed on the old refresh token.

        Two concurrent refreshes with the same token race on the ``WHERE``
        clause; the loser sees no row and gets ``None``.
        """

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions
                SET access_token = %s, refresh_token = %s, issued_at = %s, expires_at = %s
                WHERE refresh_token = %s
                RETURNING *
                """,
                (access_token, refresh_token, issued_at, expires_at, old_refresh_token),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, access_token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE access_token = %s", (access_token,))
        return cur.rowcount > 0

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE account_id = %s", (account_id,))
        return cur.rowcount

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= %s", (now or datetime.utcnow(),)
            )
        return cur.rowcount

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
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, account_id, email, action, resource, resource_id, ip, user_agent, status, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.account_id,
                    entry.email,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    entry.ip,
                    entry.user_agent,
                    entry.status,
                    entry.created_at,
                ),
            )
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
        clauses: list[str] = []
        params: list[Any] = []
        if account_id is not None:
            if not _is_uuid(account_id):
                return []
            clauses.append("account_id = %s")
            params.append(account_id)
        if email is not None:
            clauses.append("email = %s")
            params.append(email.strip().lower())
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._row_to_audit(r) for r in rows]

    # password reset
    def save_password_reset_token(
        self, token: str, account_id: str, expires_at: datetime
    ) -> PasswordResetToken:
        record = PasswordResetToken(token=token, account_id=account_id, expires_at=expires_at)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_tokens (token, account_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token, account_id, expires_at, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return record

    def consume_password_reset_token(
        self, token: str, now: datetime | None = None
    ) -> Optional[PasswordResetToken]:
        moment = now or datetime.utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_tokens
                SET used_at = %s
                WHERE token = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (moment, token, moment),
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            token=row["token"],
            account_id=str(row["account_id"]),
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or moment,
        )

    # sso provider configuration
    def upsert_sso_config(self, config: SSOConfig) -> SSOConfig:
        config.updated_at = datetime.utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sso_configs (provider, enabled, client_id, client_secret, directory_tenant, redirect_uri, allowed_domains, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (provider) DO UPDATE SET
                    enabled = EXCLUDED.enabled,
                    client_id = EXCLUDED.client_id,
                    client_secret = EXCLUDED.client_secret,
                    directory_tenant = EXCLUDED.directory_tenant,
                    redirect_uri = EXCLUDED.redirect_uri,
                    allowed_domains = EXCLUDED.allowed_domains,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    config.provider,
                    config.enabled,
                    config.client_id,
                    config.client_secret,
                    config.directory_tenant,
                    config.redirect_uri,
                    list(config.allowed_domains),
                    config.updated_at,
                ),
            )
        return config

    def get_sso_config(self, provider: str) -> Optional[SSOConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sso_configs WHERE provider = %s", (provider,)
            ).fetchone()
        return self._row_to_sso_config(row) if row else None
