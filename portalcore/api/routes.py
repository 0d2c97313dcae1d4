from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request
from fastapi.responses import RedirectResponse

from portalcore.api.schemas import (
    AccountResponse,
    AuditEntryResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MemberRequest,
    MemberResponse,
    OrganizationCreateRequest,
    OrganizationResponse,
    OrganizationUpdateRequest,
    PasswordChangeRequest,
    ResetPasswordRequest,
    SSOConfigRequest,
    SSOConfigResponse,
    TokenRefreshRequest,
    TokenResponse,
)
from portalcore.logging import get_logger
from portalcore.service.auth import TokenPair
from portalcore.service.runtime import get_runtime, mask_url_password
from portalcore.storage.models import LocalAccount, Organization

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ADMIN_ROLE = "admin"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        expires_at=tokens.expires_at,
    )


def _org_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse.from_organization(org, mask=mask_url_password)


async def get_access_token(authorization: Optional[str] = Header(None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


async def get_account(access_token: str = Depends(get_access_token)) -> LocalAccount:
    runtime = get_runtime()
    return await runtime.auth.get_account_from_token(access_token)


async def get_admin_account(account: LocalAccount = Depends(get_account)) -> LocalAccount:
    runtime = get_runtime()
    if ADMIN_ROLE not in runtime.store.get_account_roles(account.id):
        raise _http_error("forbidden", "admin role required", status_code=403)
    return account


# credential authority
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for a session token pair."""
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            account=AccountResponse.from_account(result.account),
            tokens=_token_response(result.tokens),
            roles=result.roles,
            teams=result.teams,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, access_token: str = Depends(get_access_token)):
    runtime = get_runtime()
    await runtime.auth.logout(
        access_token, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(account: LocalAccount = Depends(get_account)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "account": AccountResponse.from_account(account),
            "roles": runtime.store.get_account_roles(account.id),
            "teams": runtime.store.get_account_teams(account.id),
        },
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    account: LocalAccount = Depends(get_account),
):
    """Change the caller's password. Every session of the account is revoked."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        account.id,
        body.current_password,
        body.new_password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"message": "Password changed successfully"})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Start a password reset.

    The response is the same whether or not the email belongs to an account
    that can reset. Under TEST_MODE the token is echoed back so flows can be
    exercised without a mail server.
    """
    runtime = get_runtime()
    token = await runtime.auth.request_password_reset(
        body.email, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    data: dict[str, str] = {"message": "If the account exists, a reset link has been sent"}
    if token:
        # SMTP is blocking; keep it off the event loop
        sent = await asyncio.to_thread(runtime.email.send_password_reset, body.email, token)
        if not sent:
            logger.warning("password_reset_email_failed")
        if runtime.settings.test_mode:
            data["token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"message": "Password reset successfully"})


# federated identity
@router.get("/auth/sso/{provider}", tags=["sso"])
async def sso_begin(provider: str = Path(..., max_length=32)):
    """Redirect the browser to the provider's authorization page."""
    runtime = get_runtime()
    url = await runtime.sso.begin_login(provider)
    return RedirectResponse(url, status_code=307)


@router.get("/auth/sso/{provider}/callback", tags=["sso"])
async def sso_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
):
    """Finish a provider login; always redirects to the frontend."""
    runtime = get_runtime()
    url = await runtime.sso.handle_callback(
        provider,
        code,
        state,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return RedirectResponse(url, status_code=307)


@router.get("/admin/sso/{provider}", response_model=Envelope, tags=["admin"])
async def get_sso_config(
    provider: str = Path(..., max_length=32),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    config = runtime.sso.get_config(provider)
    return Envelope(status="ok", data=_sso_config_response(config))


@router.put("/admin/sso/{provider}", response_model=Envelope, tags=["admin"])
async def put_sso_config(
    body: SSOConfigRequest,
    provider: str = Path(..., max_length=32),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    config = runtime.sso.upsert_config(
        provider,
        enabled=body.enabled,
        client_id=body.client_id,
        client_secret=body.client_secret,
        directory_tenant=body.directory_tenant,
        redirect_uri=body.redirect_uri,
        allowed_domains=body.allowed_domains,
    )
    return Envelope(status="ok", data=_sso_config_response(config))


def _sso_config_response(config) -> SSOConfigResponse:
    # client_secret is write-only
    return SSOConfigResponse(
        provider=config.provider,
        enabled=config.enabled,
        configured=config.is_configured,
        client_id=config.client_id,
        directory_tenant=config.directory_tenant,
        redirect_uri=config.redirect_uri,
        allowed_domains=list(config.allowed_domains),
    )


@router.get("/admin/audit", response_model=Envelope, tags=["admin"])
async def list_audit(
    account_id: Optional[str] = Query(None, max_length=64),
    email: Optional[str] = Query(None, max_length=254),
    action: Optional[str] = Query(None, max_length=64),
    status: Optional[str] = Query(None, pattern="^(success|failure)$"),
    limit: int = Query(100, ge=1, le=1000),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    entries = runtime.auth.list_audit_entries(
        account_id=account_id, email=email, action=action, status=status, limit=limit
    )
    return Envelope(
        status="ok",
        data={"items": [AuditEntryResponse(**asdict(entry)) for entry in entries]},
    )


# tenant provisioner; sync handlers run in the threadpool since DDL blocks
@router.get("/organizations", response_model=Envelope, tags=["organizations"])
def list_organizations(
    limit: int = Query(100, ge=1, le=500),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    orgs = runtime.tenants.list_organizations(limit=limit)
    return Envelope(status="ok", data={"items": [_org_response(org) for org in orgs]})


@router.post("/organizations", response_model=Envelope, status_code=201, tags=["organizations"])
def create_organization(
    body: OrganizationCreateRequest,
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    org = runtime.tenants.create_organization(
        body.name,
        body.write_endpoint,
        body.read_endpoint,
        sso_enabled=body.sso_enabled,
    )
    return Envelope(status="ok", data=_org_response(org))


@router.get("/organizations/{tenant_id}", response_model=Envelope, tags=["organizations"])
def get_organization(
    tenant_id: str = Path(..., max_length=64),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=_org_response(runtime.tenants.get_organization(tenant_id)))


@router.patch("/organizations/{tenant_id}", response_model=Envelope, tags=["organizations"])
def update_organization(
    body: OrganizationUpdateRequest,
    tenant_id: str = Path(..., max_length=64),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    org = runtime.tenants.update_organization(
        tenant_id,
        display_name=body.display_name,
        sso_enabled=body.sso_enabled,
        write_endpoint=body.write_endpoint,
        read_endpoint=body.read_endpoint,
    )
    return Envelope(status="ok", data=_org_response(org))


@router.delete("/organizations/{tenant_id}", response_model=Envelope, tags=["organizations"])
def delete_organization(
    tenant_id: str = Path(..., max_length=64),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    runtime.tenants.delete_organization(tenant_id)
    return Envelope(status="ok", data={"tenant_id": tenant_id, "deleted": True})


@router.get("/organizations/{tenant_id}/members", response_model=Envelope, tags=["organizations"])
def list_members(
    tenant_id: str = Path(..., max_length=64),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    members = runtime.tenants.list_members(tenant_id)
    return Envelope(
        status="ok", data={"items": [MemberResponse(**asdict(m)) for m in members]}
    )


@router.post("/organizations/{tenant_id}/members", response_model=Envelope, tags=["organizations"])
def add_member(
    body: MemberRequest,
    tenant_id: str = Path(..., max_length=64),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    membership = runtime.tenants.add_member(tenant_id, body.account_id, body.role)
    return Envelope(status="ok", data=MemberResponse(**asdict(membership)))


@router.delete(
    "/organizations/{tenant_id}/members/{account_id}",
    response_model=Envelope,
    tags=["organizations"],
)
def remove_member(
    tenant_id: str = Path(..., max_length=64),
    account_id: str = Path(..., max_length=64),
    principal: LocalAccount = Depends(get_admin_account),
):
    runtime = get_runtime()
    removed = runtime.tenants.remove_member(tenant_id, account_id)
    if not removed:
        raise _http_error("not_found", "membership not found", status_code=404)
    return Envelope(status="ok", data={"tenant_id": tenant_id, "account_id": account_id})
