from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from tenantauth.storage.models import (
    PasswordHistoryEntry,
    RefreshToken,
    Session,
    Tenant,
    TenantMembership,
    User,
)

# Lookup kinds accepted by ``get_user_by_token``.
TOKEN_KINDS = {
    "email_verification": "email_verification_token",
    "reset": "reset_token",
    "recovery": "recovery_token",
}


@runtime_checkable
class AuthStore(Protocol):
    """Persistence contract shared by the memory and Postgres backends.

    Writes that several concurrent requests may race on (failed-login
    counting, refresh-token revocation, session cascades) are single atomic
    operations on the store so callers never read-modify-write.
    """

    # users

    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_token(self, kind: str, token: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> User: ...

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_minutes: int, now: datetime
    ) -> User: ...

    def reset_failed_logins(
        self, user_id: str, *, last_login_at: Optional[datetime] = None
    ) -> User: ...

    # sessions

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_session(
        self,
        session_id: str,
        *,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
    ) -> bool: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
    ) -> List[str]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    # refresh tokens

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self,
        token_hash: str,
        *,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
    ) -> bool: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, now: datetime
    ) -> int: ...

    # password history

    def add_password_history(self, entry: PasswordHistoryEntry) -> PasswordHistoryEntry: ...

    def list_password_history(
        self, user_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...

    def prune_password_history(self, user_id: str, keep: int) -> int: ...

    # tenants

    def create_tenant(self, tenant: Tenant) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def add_membership(self, membership: TenantMembership) -> TenantMembership: ...

    def get_membership(
        self, user_id: str, tenant_id: str
    ) -> Optional[TenantMembership]: ...

    def list_memberships(self, user_id: str) -> List[TenantMembership]: ...

    def update_membership_role(
        self, user_id: str, tenant_id: str, role: str, now: datetime
    ) -> TenantMembership: ...

    def remove_membership(self, user_id: str, tenant_id: str, now: datetime) -> bool: ...

    # system settings

    def get_system_settings(self) -> Dict[str, Any]: ...

    def set_system_setting(self, key: str, value: Any) -> None: ...


__all__ = ["AuthStore", "TOKEN_KINDS"]
