from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from tenantauth.api.cookies import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from tenantauth.api.deps import get_principal, require_tenant_roles
from tenantauth.api.schemas import (
    EmailVerifyRequest,
    Envelope,
    LoginRequest,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    RecoveryComplete,
    RecoveryRequest,
    RegisterRequest,
    TokenRefreshRequest,
)
from tenantauth.service.auth import AuthContext
from tenantauth.service.errors import RefreshTokenInvalidError
from tenantauth.service.guard import TenantAccessDecision
from tenantauth.service.runtime import get_runtime
from tenantauth.storage.models import DeviceInfo

router = APIRouter(prefix="/v1")


def _device_info(request: Request, device: Optional[str] = None) -> DeviceInfo:
    return DeviceInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device=device,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    pair = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        organization_name=body.organization_name,
        device=_device_info(request),
    )
    set_auth_cookies(response, pair, runtime.config)
    return Envelope(status="ok", data=pair.as_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    pair = await runtime.auth.login(body.email, body.password, _device_info(request, body.device))
    set_auth_cookies(response, pair, runtime.config)
    return Envelope(status="ok", data=pair.as_dict())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request, response: Response, body: Optional[TokenRefreshRequest] = None
):
    """Rotate the refresh token from the body or the refresh_token cookie."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise RefreshTokenInvalidError("Refresh token is required")
    pair = await runtime.auth.refresh(token)
    set_auth_cookies(response, pair, runtime.config)
    return Envelope(status="ok", data=pair.as_dict())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.logout(principal.user_id, principal.session_id)
    clear_auth_cookies(response, runtime.config)
    return Envelope(status="ok", data={"message": "Logged out"})


@router.post("/auth/logout-others", response_model=Envelope, tags=["auth"])
async def logout_others(principal: AuthContext = Depends(get_principal)):
    revoked = await get_runtime().auth.logout_other_sessions(
        principal.user_id, principal.session_id
    )
    return Envelope(status="ok", data={"revoked_sessions": len(revoked)})


@router.get("/auth/session-status", response_model=Envelope, tags=["auth"])
async def session_status(principal: AuthContext = Depends(get_principal)):
    status = await get_runtime().auth.get_session_status(
        principal.user_id, principal.session_id
    )
    return Envelope(status="ok", data=status)


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    sessions = get_runtime().auth.list_sessions(principal.user_id)
    for item in sessions:
        item["current"] = item["id"] == principal.session_id
    return Envelope(status="ok", data={"sessions": sessions})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_principal)):
    await get_runtime().auth.revoke_user_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"message": "Session revoked"})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    token = runtime.auth.request_password_reset(body.email)
    data = {"message": "If an account exists, a reset code has been sent"}
    if token and not runtime.config.is_production:
        data["reset_token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    await get_runtime().auth.reset_password(body.token, body.new_password, body.otp)
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    result = await get_runtime().auth.change_password(
        principal.user_id, body.old_password, body.new_password
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/recovery/request", response_model=Envelope, tags=["auth"])
async def request_recovery(body: RecoveryRequest):
    return Envelope(status="ok", data=get_runtime().auth.request_account_recovery(body.email))


@router.post("/auth/recovery/complete", response_model=Envelope, tags=["auth"])
async def complete_recovery(body: RecoveryComplete):
    result = await get_runtime().auth.complete_account_recovery(
        body.token, body.new_password, body.mfa_code
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/mfa/enroll", response_model=Envelope, tags=["mfa"])
async def enroll_mfa(principal: AuthContext = Depends(get_principal)):
    return Envelope(status="ok", data=get_runtime().auth.enroll_mfa(principal.user_id))


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa(body: MFAVerifyRequest, principal: AuthContext = Depends(get_principal)):
    get_runtime().auth.verify_mfa_enrollment(principal.user_id, body.code)
    return Envelope(status="ok", data={"mfa_enabled": True})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerifyRequest):
    user = get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data={"user_id": user.id, "email_verified": user.email_verified})


@router.get("/tenants/{tenant_id}/membership", response_model=Envelope, tags=["tenants"])
async def tenant_membership(
    tenant_id: str,
    decision: TenantAccessDecision = Depends(require_tenant_roles("admin", "member", "viewer")),
):
    membership = decision.membership
    return Envelope(
        status="ok",
        data={
            "tenant_id": tenant_id,
            "user_id": membership.user_id,
            "role": membership.role,
            "created_at": membership.created_at.isoformat(),
        },
    )
