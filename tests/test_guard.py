"""Tenant access decisions."""

import uuid
from dataclasses import dataclass
from typing import List, Optional

import pytest

from tenantauth.service.audit import AuditLog
from tenantauth.service.errors import (
    InsufficientRoleError,
    NotAMemberError,
    TenantAccessDeniedError,
    TenantContextRequiredError,
    UserContextRequiredError,
)
from tenantauth.service.guard import TenantAccessGuard, TenantRequestContext
from tenantauth.service.tenants import TenantMembershipResolver
from tenantauth.storage.models import User


@dataclass
class Principal:
    user_id: str
    tenant_id: Optional[str] = None
    tenant_access: Optional[List[str]] = None


@pytest.fixture
def resolver(memory_store):
    return TenantMembershipResolver(memory_store)


@pytest.fixture
def guard(resolver, audit_sink):
    return TenantAccessGuard(resolver, AuditLog([audit_sink]))


@pytest.fixture
def member(memory_store, resolver):
    user = memory_store.create_user(
        User(id=str(uuid.uuid4()), email="g@example.com", password_hash="h")
    )
    tenant = resolver.create_tenant("Acme")
    resolver.add_user_to_tenant(user.id, tenant.id, "viewer")
    return user, tenant


class TestTenantAccessGuard:
    def test_no_roles_allows_without_lookup(self, guard):
        decision = guard.check([], None)
        assert decision.allowed

    def test_missing_tenant_context(self, guard):
        with pytest.raises(TenantContextRequiredError):
            guard.check(["admin"], Principal(user_id="u", tenant_access=[]))

    def test_stale_claim_shape(self, guard):
        with pytest.raises(UserContextRequiredError):
            guard.check(
                ["admin"], Principal(user_id="u", tenant_access=None), TenantRequestContext(path_tenant_id="t1")
            )

    def test_tenant_not_in_claims_denied_regardless_of_roles(self, guard, member):
        user, tenant = member
        principal = Principal(user_id=user.id, tenant_access=["another-tenant"])
        with pytest.raises(TenantAccessDeniedError):
            guard.check(["viewer"], principal, TenantRequestContext(header_tenant_id=tenant.id))

    def test_stale_claim_without_membership(self, guard, member, resolver, audit_sink):
        """The claim lists the tenant but the live membership is gone."""
        user, tenant = member
        resolver.remove_user_from_tenant(user.id, tenant.id)
        principal = Principal(user_id=user.id, tenant_access=[tenant.id])
        with pytest.raises(NotAMemberError):
            guard.check(["viewer"], principal, TenantRequestContext(path_tenant_id=tenant.id))
        denied = audit_sink.events("tenant_access_denied")
        assert denied[-1]["reason"] == "not_a_member"

    def test_role_read_from_membership_not_claims(self, guard, member, resolver):
        user, tenant = member
        principal = Principal(user_id=user.id, tenant_access=[tenant.id])
        with pytest.raises(InsufficientRoleError):
            guard.check(["admin"], principal, TenantRequestContext(path_tenant_id=tenant.id))
        resolver.update_user_tenant_role(user.id, tenant.id, "admin")
        assert guard.check(["admin"], principal, TenantRequestContext(path_tenant_id=tenant.id)).allowed

    def test_source_priority_and_claim_fallback(self, guard, member, audit_sink):
        user, tenant = member
        principal = Principal(user_id=user.id, tenant_id=tenant.id, tenant_access=[tenant.id])
        ctx = TenantRequestContext(body_tenant_id=tenant.id, header_tenant_id="ignored")
        decision = guard.check(["viewer"], principal, ctx)
        assert decision.source == "body"
        decision = guard.check(["viewer"], principal)
        assert decision.source == "claim"
        assert decision.membership.role == "viewer"
        assert audit_sink.events("tenant_access_granted")
