from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional


@dataclass
class Organization:
    tenant_id: str
    display_name: str
    write_endpoint: str
    read_endpoint: str
    sso_enabled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def schema_name(self) -> str:
        return tenant_schema_name(self.tenant_id)


def tenant_schema_name(tenant_id: str) -> str:
    """Map a tenant id onto an identifier made only of ``[A-Za-z0-9_]``."""

    return "".join(ch if ch.isascii() and (ch.isalnum() or ch == "_") else "_" for ch in tenant_id)


@dataclass
class LocalAccount:
    id: str
    email: str
    name: str = ""
    password_hash: Optional[str] = None
    is_active: bool = True
    is_federated: bool = False
    federation_provider: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def can_use_password(self) -> bool:
        return not self.is_federated and bool(self.password_hash)


@dataclass
class Session:
    id: str
    access_token: str
    refresh_token: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        access_token: str,
        refresh_token: str,
        ttl_minutes: int = 60 * 24,
        ip: str | None = None,
        user_agent: str | None = None,
        *,
        issued_at: datetime | None = None,
    ) -> "Session":
        now = issued_at or datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            access_token=access_token,
            refresh_token=refresh_token,
            account_id=account_id,
            issued_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip=ip,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


@dataclass(frozen=True)
class AuditEntry:
    id: str
    action: str
    resource: str
    status: str
    email: str = ""
    account_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PasswordResetToken:
    token: str
    account_id: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.used_at is None and (now or datetime.utcnow()) < self.expires_at


@dataclass
class SSOConfig:
    provider: str
    enabled: bool = True
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    directory_tenant: Optional[str] = None
    redirect_uri: Optional[str] = None
    allowed_domains: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.client_id and self.client_secret)


@dataclass
class Membership:
    tenant_id: str
    account_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=datetime.utcnow)
