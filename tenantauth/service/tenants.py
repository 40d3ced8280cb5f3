from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.errors import ConflictError, NotFoundError, ValidationError
from tenantauth.service.store import AuthStore
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import TENANT_ROLES, Tenant, TenantMembership

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_MAX_SLUG_ATTEMPTS = 50


def slugify(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to one hyphen, trim hyphens."""
    return _NON_ALNUM.sub("-", name.lower()).strip("-")


def validate_role(role: str) -> str:
    if role not in TENANT_ROLES:
        raise ValidationError(
            f"role must be one of {', '.join(TENANT_ROLES)}",
            detail={"role": role},
        )
    return role


class TenantMembershipResolver:
    """Maps users to their tenants and per-tenant roles."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_tenant(self, name: str, settings: Optional[Dict] = None) -> Tenant:
        base = slugify(name)
        if not base:
            raise ValidationError("tenant name must contain letters or digits")
        for attempt in range(1, _MAX_SLUG_ATTEMPTS + 1):
            slug = base if attempt == 1 else f"{base}-{attempt}"
            if self.store.get_tenant_by_slug(slug):
                continue
            now = self._now()
            tenant = Tenant(
                id=str(uuid.uuid4()),
                name=name,
                slug=slug,
                settings=settings,
                created_at=now,
                updated_at=now,
            )
            try:
                created = self.store.create_tenant(tenant)
            except ConstraintViolation as exc:
                if exc.constraint == "tenant_slug":
                    # lost a race for this slug; try the next suffix
                    continue
                raise
            logger.info("tenant_created", tenant_id=created.id, slug=created.slug)
            return created
        raise ConflictError("Unable to allocate a tenant slug", detail={"slug": base})

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self.store.get_tenant(tenant_id)

    def add_user_to_tenant(
        self, user_id: str, tenant_id: str, role: str = "member"
    ) -> TenantMembership:
        validate_role(role)
        if not self.store.get_tenant(tenant_id):
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        now = self._now()
        membership = TenantMembership(
            id=str(uuid.uuid4()),
            user_id=user_id,
            tenant_id=tenant_id,
            role=role,
            created_at=now,
            updated_at=now,
        )
        try:
            return self.store.add_membership(membership)
        except ConstraintViolation as exc:
            if exc.constraint == "membership_user_tenant":
                raise ConflictError(
                    "User is already a member of this tenant",
                    detail={"tenant_id": tenant_id},
                ) from exc
            raise

    def update_user_tenant_role(
        self, user_id: str, tenant_id: str, role: str
    ) -> TenantMembership:
        validate_role(role)
        try:
            return self.store.update_membership_role(user_id, tenant_id, role, self._now())
        except RecordNotFound as exc:
            raise NotFoundError(
                "Membership not found", detail={"tenant_id": tenant_id}
            ) from exc

    def remove_user_from_tenant(self, user_id: str, tenant_id: str) -> None:
        if not self.store.remove_membership(user_id, tenant_id, self._now()):
            raise NotFoundError("Membership not found", detail={"tenant_id": tenant_id})

    def get_membership(self, user_id: str, tenant_id: str) -> Optional[TenantMembership]:
        return self.store.get_membership(user_id, tenant_id)

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        return self.store.list_memberships(user_id)

    def tenant_claims(self, user_id: str) -> Tuple[Optional[str], List[str]]:
        """Default tenant (oldest live membership) and every accessible tenant id."""
        memberships = self.store.list_memberships(user_id)
        tenant_ids = [m.tenant_id for m in memberships]
        return (tenant_ids[0] if tenant_ids else None), tenant_ids
