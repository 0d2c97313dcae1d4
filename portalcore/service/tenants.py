from __future__ import annotations

from typing import Any, Callable, List, Optional, Protocol

import psycopg

from portalcore.config import Settings
from portalcore.logging import get_logger
from portalcore.service.errors import NotFoundError, ProvisioningError, ValidationError
from portalcore.storage.errors import ConstraintViolation
from portalcore.storage.models import Membership, Organization, tenant_schema_name


class TenantConnection(Protocol):
    def execute(self, query: Any, params: Any = None) -> Any: ...

    def close(self) -> None: ...


TenantConnector = Callable[[str], TenantConnection]


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def baseline_statements(schema_name: str) -> List[str]:
    """DDL for the fixed per-tenant baseline, every object qualified by ``schema_name``."""
    schema = quote_ident(schema_name)
    return [
        f"""CREATE TABLE IF NOT EXISTS {schema}.users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    account_id UUID,
    email TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    role TEXT NOT NULL DEFAULT 'member',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
    updated_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc')
)""",
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_users_email ON {schema}.users (lower(email))",
        f"CREATE INDEX IF NOT EXISTS idx_users_account_id ON {schema}.users (account_id)",
        f"CREATE INDEX IF NOT EXISTS idx_users_created_at ON {schema}.users (created_at)",
    ]


class TenantStore(Protocol):
    def create_organization(
        self,
        display_name: str,
        write_endpoint: str,
        read_endpoint: str,
        *,
        sso_enabled: bool = False,
        tenant_id: str | None = None,
    ) -> Organization: ...

    def get_organization(self, tenant_id: str) -> Optional[Organization]: ...

    def list_organizations(self, limit: int = 100) -> List[Organization]: ...

    def update_organization(self, tenant_id: str, **changes: Any) -> Optional[Organization]: ...

    def delete_organization(self, tenant_id: str) -> bool: ...

    def add_membership(self, tenant_id: str, account_id: str, role: str = "member") -> Membership: ...

    def remove_membership(self, tenant_id: str, account_id: str) -> bool: ...

    def list_memberships(self, tenant_id: str) -> List[Membership]: ...


class TenantService:
    """Tenant registry plus provisioning of each tenant's isolated schema.

    Registry rows live in the platform store; schemas live in whatever
    database the organization's write endpoint points at. Calls for one
    tenant id are not serialized here.
    """

    def __init__(
        self,
        store: TenantStore,
        settings: Settings,
        *,
        connector: Optional[TenantConnector] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = get_logger(__name__)
        self._connector = connector or self._default_connector

    def _default_connector(self, dsn: str) -> TenantConnection:
        # autocommit so one failed DDL statement does not poison the rest
        return psycopg.connect(
            dsn,
            autocommit=True,
            connect_timeout=self.settings.tenant_connect_timeout_seconds,
        )

    # registry reads
    def get_organization(self, tenant_id: str) -> Organization:
        org = self.store.get_organization(tenant_id)
        if not org:
            raise NotFoundError("organization not found", detail={"tenant_id": tenant_id})
        return org

    def list_organizations(self, limit: int = 100) -> List[Organization]:
        return self.store.list_organizations(limit=limit)

    # lifecycle
    def create_organization(
        self,
        name: str,
        write_endpoint: Optional[str] = None,
        read_endpoint: Optional[str] = None,
        *,
        sso_enabled: bool = False,
    ) -> Organization:
        display_name = (name or "").strip()
        if not display_name:
            raise ValidationError("organization name is required", detail={"field": "name"})
        write = write_endpoint or self.settings.tenant_write_endpoint
        read = read_endpoint or write
        org = self.store.create_organization(display_name, write, read, sso_enabled=sso_enabled)
        self.logger.info("organization_registered", tenant_id=org.tenant_id, display_name=display_name)

        try:
            conn = self._connector(org.write_endpoint)
        except psycopg.Error as exc:
            self.logger.error("tenant_connect_failed", tenant_id=org.tenant_id, error=str(exc))
            self._rollback_registry(org.tenant_id)
            raise ProvisioningError(
                "failed to connect to tenant database", detail={"tenant_id": org.tenant_id}
            ) from exc
        try:
            self._create_schema(conn, org.schema_name)
        except psycopg.Error as exc:
            self.logger.error(
                "tenant_schema_create_failed",
                tenant_id=org.tenant_id,
                schema=org.schema_name,
                error=str(exc),
            )
            self._rollback_registry(org.tenant_id)
            raise ProvisioningError(
                "failed to create tenant schema", detail={"tenant_id": org.tenant_id}
            ) from exc
        finally:
            conn.close()

        self.logger.info("organization_created", tenant_id=org.tenant_id, schema=org.schema_name)
        return org

    def _rollback_registry(self, tenant_id: str) -> None:
        try:
            self.store.delete_organization(tenant_id)
        except Exception as exc:
            # the provisioning error is what the caller needs to see
            self.logger.error("organization_rollback_failed", tenant_id=tenant_id, error=str(exc))

    def _create_schema(self, conn: TenantConnection, schema_name: str) -> int:
        """Create the schema, then apply the baseline best-effort.

        Only a failed ``CREATE SCHEMA`` raises; a failed baseline statement is
        logged and skipped. Returns the number of baseline statements applied.
        """
        conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema_name)}")
        applied = 0
        for statement in baseline_statements(schema_name):
            try:
                conn.execute(statement)
                applied += 1
            except psycopg.Error as exc:
                self.logger.warning(
                    "tenant_schema_statement_failed",
                    schema=schema_name,
                    statement=statement[:100],
                    error=str(exc),
                )
        return applied

    def update_organization(
        self,
        tenant_id: str,
        *,
        display_name: Optional[str] = None,
        sso_enabled: Optional[bool] = None,
        write_endpoint: Optional[str] = None,
        read_endpoint: Optional[str] = None,
    ) -> Organization:
        """Partial update. A new write endpoint without a read endpoint resets read to match."""
        self.get_organization(tenant_id)
        changes: dict[str, Any] = {}
        if display_name is not None and display_name.strip():
            changes["display_name"] = display_name.strip()
        if sso_enabled is not None:
            changes["sso_enabled"] = sso_enabled
        if write_endpoint:
            changes["write_endpoint"] = write_endpoint
        if read_endpoint:
            changes["read_endpoint"] = read_endpoint
        elif write_endpoint:
            changes["read_endpoint"] = write_endpoint
        org = self.store.update_organization(tenant_id, **changes)
        if not org:
            raise NotFoundError("organization not found", detail={"tenant_id": tenant_id})
        self.logger.info("organization_updated", tenant_id=tenant_id, fields=sorted(changes))
        return org

    def delete_organization(self, tenant_id: str) -> None:
        """Drop the tenant schema best-effort, then always remove the registry row."""
        org = self.get_organization(tenant_id)
        try:
            conn = self._connector(org.write_endpoint)
        except psycopg.Error as exc:
            self.logger.warning("tenant_connect_failed_on_delete", tenant_id=tenant_id, error=str(exc))
        else:
            try:
                conn.execute(f"DROP SCHEMA IF EXISTS {quote_ident(org.schema_name)} CASCADE")
            except psycopg.Error as exc:
                self.logger.warning(
                    "tenant_schema_drop_failed",
                    tenant_id=tenant_id,
                    schema=org.schema_name,
                    error=str(exc),
                )
            finally:
                conn.close()
        self.store.delete_organization(tenant_id)
        self.logger.info("organization_deleted", tenant_id=tenant_id)

    # membership
    def add_member(self, tenant_id: str, account_id: str, role: str = "member") -> Membership:
        self.get_organization(tenant_id)
        try:
            membership = self.store.add_membership(tenant_id, account_id, role)
        except ConstraintViolation as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc
        self.logger.info("member_added", tenant_id=tenant_id, account_id=account_id, role=role)
        return membership

    def remove_member(self, tenant_id: str, account_id: str) -> bool:
        self.get_organization(tenant_id)
        removed = self.store.remove_membership(tenant_id, account_id)
        if removed:
            self.logger.info("member_removed", tenant_id=tenant_id, account_id=account_id)
        return removed

    def list_members(self, tenant_id: str) -> List[Membership]:
        self.get_organization(tenant_id)
        return self.store.list_memberships(tenant_id)
