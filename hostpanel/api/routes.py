from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from hostpanel.api.schemas import (
    AccountResponse,
    AuditEventListResponse,
    AuditEventResponse,
    AuditStatResponse,
    AuditStatsResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    RegisterResponse,
    TwoFactorConfirmRequest,
    TwoFactorDisableRequest,
    TwoFactorEnrollmentResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from hostpanel.service.audit import CATEGORIES, STATUSES
from hostpanel.service.auth import AuthContext, LoginResult
from hostpanel.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        account_id=result.account_id,
        requires_two_factor=result.requires_two_factor,
        token=result.token,
        expires_at=result.expires_at,
        account=AccountResponse.from_account(result.account) if result.account else None,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and return a session token with its API credentials.

    Raises:
        400: If username, email or password fail validation
        403: If signup is disabled
        409: If the username or email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.username, body.email, body.password, **_client_meta(request)
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            account=AccountResponse.from_account(result.account),
            token=result.token,
            expires_at=result.expires_at,
            api_key=result.api_key,
            api_secret=result.api_secret,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Accounts with two-factor enabled get ``requires_two_factor`` and the account
    id instead of a token; finish with ``POST /auth/2fa/verify``.

    Raises:
        401: If credentials are invalid
        423: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, **_client_meta(request))
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.verify_two_factor(
        body.account_id, body.code, **_client_meta(request)
    )
    return Envelope(status="ok", data=_login_response(result))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = runtime.auth.current_account(principal)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    account = runtime.auth.update_profile(
        principal,
        email=body.email,
        locale=body.locale,
        timezone=body.timezone,
        **_client_meta(request),
    )
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal, body.current_password, body.new_password, **_client_meta(request)
    )
    return Envelope(status="ok", data={"message": "password changed"})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["auth"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = runtime.auth.two_factor_status(principal)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(enabled=status.enabled, pending=status.pending),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def begin_two_factor(principal: AuthContext = Depends(get_user)):
    """Start enrollment; the secret is returned once and stays pending until confirmed."""
    runtime = get_runtime()
    enrollment = runtime.auth.begin_two_factor(principal)
    return Envelope(
        status="ok",
        data=TwoFactorEnrollmentResponse(
            secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri
        ),
    )


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_two_factor(
    body: TwoFactorConfirmRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    runtime.auth.confirm_two_factor(principal, body.code, **_client_meta(request))
    return Envelope(status="ok", data=TwoFactorStatusResponse(enabled=True, pending=False))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(principal, body.password, **_client_meta(request))
    return Envelope(status="ok", data=TwoFactorStatusResponse(enabled=False, pending=False))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.auth.logout(principal, **_client_meta(request))
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/activity", response_model=Envelope, tags=["activity"])
async def list_activity(
    principal: AuthContext = Depends(get_user),
    limit: int = Query(50, ge=1, le=500),
    category: Optional[str] = Query(None, pattern=f"^({'|'.join(CATEGORIES)})$"),
    status: Optional[str] = Query(None, pattern=f"^({'|'.join(STATUSES)})$"),
):
    runtime = get_runtime()
    await runtime.audit.drain()
    events = runtime.audit.list_events(
        principal.account_id, limit=limit, category=category, status=status
    )
    return Envelope(
        status="ok",
        data=AuditEventListResponse(items=[AuditEventResponse.from_event(e) for e in events]),
    )


@router.get("/activity/stats", response_model=Envelope, tags=["activity"])
async def activity_stats(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.audit.drain()
    stats = runtime.audit.stats(principal.account_id)
    return Envelope(
        status="ok",
        data=AuditStatsResponse(items=[AuditStatResponse(**row) for row in stats]),
    )

