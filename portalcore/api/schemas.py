from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from portalcore.storage.models import LocalAccount, Organization

# Longest password accepted at the edge; argon2 cost scales with input size
MAX_PASSWORD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_inactive",
    "invalid_token",
    "session_expired",
    "provisioning_failure",
    "csrf_rejected",
    "domain_not_allowed",
    "account_conflict",
    "sso_provider_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# auth requests
class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


# auth responses
class AccountResponse(BaseModel):
    id: str
    email: str
    name: str = ""
    is_active: bool = True
    is_federated: bool = False
    federation_provider: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: LocalAccount) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            is_active=account.is_active,
            is_federated=account.is_federated,
            federation_provider=account.federation_provider,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime


class LoginResponse(BaseModel):
    account: AccountResponse
    tokens: TokenResponse
    roles: List[str] = Field(default_factory=list)
    teams: List[str] = Field(default_factory=list)


# organizations
class OrganizationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    write_endpoint: Optional[str] = Field(None, max_length=2048)
    read_endpoint: Optional[str] = Field(None, max_length=2048)
    sso_enabled: bool = False


class OrganizationUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=255)
    sso_enabled: Optional[bool] = None
    write_endpoint: Optional[str] = Field(None, max_length=2048)
    read_endpoint: Optional[str] = Field(None, max_length=2048)


class OrganizationResponse(BaseModel):
    """Registry row as returned to clients.

    Endpoints are connection strings; passwords in them are masked.
    """

    tenant_id: str
    display_name: str
    schema_name: str
    sso_enabled: bool
    write_endpoint: Optional[str] = None
    read_endpoint: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_organization(cls, org: Organization, mask=None) -> "OrganizationResponse":
        mask = mask or (lambda value: value)
        return cls(
            tenant_id=org.tenant_id,
            display_name=org.display_name,
            schema_name=org.schema_name,
            sso_enabled=org.sso_enabled,
            write_endpoint=mask(org.write_endpoint),
            read_endpoint=mask(org.read_endpoint),
            created_at=org.created_at,
            updated_at=org.updated_at,
        )


class MemberRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=64)
    role: str = Field("member", min_length=1, max_length=64)


class MemberResponse(BaseModel):
    tenant_id: str
    account_id: str
    role: str
    created_at: Optional[datetime] = None


# administration
class SSOConfigRequest(BaseModel):
    enabled: bool = True
    client_id: Optional[str] = Field(None, max_length=512)
    client_secret: Optional[str] = Field(None, max_length=1024)
    directory_tenant: Optional[str] = Field(None, max_length=255)
    redirect_uri: Optional[str] = Field(None, max_length=2048)
    allowed_domains: List[str] = Field(default_factory=list, max_length=100)


class SSOConfigResponse(BaseModel):
    provider: str
    enabled: bool
    configured: bool
    client_id: Optional[str] = None
    directory_tenant: Optional[str] = None
    redirect_uri: Optional[str] = None
    allowed_domains: List[str] = Field(default_factory=list)


class AuditEntryResponse(BaseModel):
    id: str
    action: str
    resource: str
    status: str
    email: str = ""
    account_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
