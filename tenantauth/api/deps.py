from __future__ import annotations

import json
from typing import Optional

from fastapi import Depends, Header, Request

from tenantauth.api.cookies import ACCESS_COOKIE
from tenantauth.logging import bind_auth_context
from tenantauth.service.auth import AuthContext
from tenantauth.service.errors import AuthenticationError
from tenantauth.service.guard import TenantAccessDecision, TenantRequestContext
from tenantauth.service.runtime import get_runtime

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Authenticate from the Bearer header, else the access_token cookie."""
    token = _bearer_token(authorization) or request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise AuthenticationError("Authentication required")
    principal = await get_runtime().auth.authenticate_access_token(token)
    request.state.principal = principal
    bind_auth_context(user_id=principal.user_id, session_id=principal.session_id)
    return principal


async def _body_tenant_id(request: Request) -> Optional[str]:
    if request.method not in _BODY_METHODS:
        return None
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = json.loads(await request.body() or b"null")
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    value = body.get("tenantId") or body.get("tenant_id")
    return str(value) if value else None


async def resolve_tenant_context(request: Request) -> TenantRequestContext:
    header_values = request.headers.getlist("x-tenant-id")
    header_tenant = header_values[0].split(",")[0].strip() if header_values else None
    return TenantRequestContext(
        path_tenant_id=request.path_params.get("tenant_id"),
        body_tenant_id=await _body_tenant_id(request),
        header_tenant_id=header_tenant or None,
        resolved_tenant_id=getattr(request.state, "tenant_id", None),
    )


def require_tenant_roles(*roles: str):
    """Dependency factory: authenticate, then run the tenant access guard for ``roles``."""

    async def _dependency(
        request: Request,
        principal: AuthContext = Depends(get_principal),
        ctx: TenantRequestContext = Depends(resolve_tenant_context),
    ) -> TenantAccessDecision:
        decision = get_runtime().guard.check(roles, principal, ctx)
        if decision.tenant_id:
            request.state.tenant_id = decision.tenant_id
            bind_auth_context(tenant_id=decision.tenant_id)
        return decision

    return _dependency
