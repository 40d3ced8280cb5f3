from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditLog
from tenantauth.service.errors import (
    InsufficientRoleError,
    NotAMemberError,
    TenantAccessDeniedError,
    TenantContextRequiredError,
    UserContextRequiredError,
)
from tenantauth.service.tenants import TenantMembershipResolver
from tenantauth.storage.models import TenantMembership

logger = get_logger(__name__)


@dataclass
class TenantRequestContext:
    """Tenant id candidates pulled from one request, by source."""

    path_tenant_id: Optional[str] = None
    body_tenant_id: Optional[str] = None
    header_tenant_id: Optional[str] = None
    resolved_tenant_id: Optional[str] = None

    def candidate(self) -> tuple[Optional[str], Optional[str]]:
        for source, value in (
            ("path", self.path_tenant_id),
            ("body", self.body_tenant_id),
            ("header", self.header_tenant_id),
            ("context", self.resolved_tenant_id),
        ):
            if value:
                return value, source
        return None, None


@dataclass
class TenantAccessDecision:
    allowed: bool
    tenant_id: Optional[str] = None
    source: Optional[str] = None
    membership: Optional[TenantMembership] = None


class TenantAccessGuard:
    """Decides whether a principal may act on a tenant.

    The token's ``tenant_access`` claim is checked first without touching
    storage. Role checks always read the live membership row, since roles
    can change after a token is issued.
    """

    def __init__(
        self, memberships: TenantMembershipResolver, audit: Optional[AuditLog] = None
    ) -> None:
        self.memberships = memberships
        self.audit = audit or AuditLog()

    def _record(self, allowed: bool, reason: str, **fields) -> None:
        event = "tenant_access_granted" if allowed else "tenant_access_denied"
        try:
            self.audit.record(event, reason=reason, **fields)
        except Exception as exc:
            logger.warning("audit_record_failed", audit_event=event, error=str(exc))

    def check(
        self,
        required_roles: Iterable[str],
        principal,
        ctx: Optional[TenantRequestContext] = None,
    ) -> TenantAccessDecision:
        """Raise a ForbiddenError subclass on denial; return the decision otherwise.

        ``principal`` is anything exposing ``user_id``, ``tenant_id`` and
        ``tenant_access`` (an ``AuthContext`` in practice).
        """
        roles = tuple(required_roles or ())
        if not roles:
            return TenantAccessDecision(allowed=True)

        user_id = getattr(principal, "user_id", None)
        tenant_id, source = (ctx or TenantRequestContext()).candidate()
        if not tenant_id and principal is not None:
            tenant_id, source = getattr(principal, "tenant_id", None), "claim"
        if not tenant_id:
            self._record(False, "tenant_context_required", user_id=user_id)
            raise TenantContextRequiredError()

        tenant_access = getattr(principal, "tenant_access", None)
        if not user_id or not isinstance(tenant_access, list):
            self._record(False, "user_context_required", user_id=user_id, tenant_id=tenant_id)
            raise UserContextRequiredError()

        if tenant_id not in tenant_access:
            self._record(False, "tenant_not_in_claims", user_id=user_id, tenant_id=tenant_id)
            raise TenantAccessDeniedError(detail={"tenant_id": tenant_id})

        membership = self.memberships.get_membership(user_id, tenant_id)
        if membership is None:
            self._record(False, "not_a_member", user_id=user_id, tenant_id=tenant_id)
            raise NotAMemberError(detail={"tenant_id": tenant_id})
        if membership.role not in roles:
            self._record(
                False,
                "insufficient_role",
                user_id=user_id,
                tenant_id=tenant_id,
                role=membership.role,
                required=list(roles),
            )
            raise InsufficientRoleError(
                detail={"tenant_id": tenant_id, "required_roles": list(roles)}
            )

        self._record(
            True, "role_ok", user_id=user_id, tenant_id=tenant_id, role=membership.role, source=source
        )
        return TenantAccessDecision(
            allowed=True, tenant_id=tenant_id, source=source, membership=membership
        )
