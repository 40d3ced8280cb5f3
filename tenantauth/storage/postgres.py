from __future__ import annotations

import json
from dataclasses import asdict, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.service.store import TOKEN_KINDS
from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import (
    PasswordHistoryEntry,
    RefreshToken,
    Session,
    Tenant,
    TenantMembership,
    User,
    utcnow,
)

T = TypeVar("T")

_USER_COLUMNS = tuple(f.name for f in fields(User))
_UPDATABLE_USER_COLUMNS = frozenset(_USER_COLUMNS) - {"id", "created_at"}
_JSON_COLUMNS = frozenset({"device_info", "settings"})


def _model_from_row(model: Type[T], row: Dict[str, Any]) -> T:
    kwargs = {}
    for f in fields(model):
        if f.name not in row:
            continue
        value = row[f.name]
        if f.name in _JSON_COLUMNS and isinstance(value, str):
            value = json.loads(value)
        elif f.name == "id" or f.name.endswith("_id"):
            value = str(value) if value is not None else None
        kwargs[f.name] = value
    return model(**kwargs)


def _json_or_none(value: Optional[dict]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStore:
    """Postgres-backed auth store.

    Writes that must not interleave are single ``UPDATE ... RETURNING``
    statements; the session cascade runs both updates on one pooled
    connection, which commits them as one transaction.
    """

    required_tables = (
        "app_user",
        "auth_session",
        "refresh_token",
        "password_history",
        "tenant",
        "tenant_membership",
        "system_setting",
    )

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Refuse to serve requests until every auth table exists."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # users

    def create_user(self, user: User) -> User:
        try:
            user.check_mfa_invariant()
        except ValueError as exc:
            raise ConstraintViolation(str(exc), constraint="user_mfa") from exc
        columns = ", ".join(_USER_COLUMNS)
        placeholders = ", ".join(f"%({name})s" for name in _USER_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO app_user ({columns}) VALUES ({placeholders}) RETURNING *",
                    asdict(user),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already registered", {"field": "email"}, constraint="user_email"
            ) from None
        return _model_from_row(User, row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _model_from_row(User, row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return _model_from_row(User, row) if row else None

    def get_user_by_token(self, kind: str, token: str) -> Optional[User]:
        column = TOKEN_KINDS.get(kind)
        if column is None:
            raise ValueError(f"unknown token kind: {kind}")
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (token,)
            ).fetchone()
        return _model_from_row(User, row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> User:
        unknown = set(changes) - _UPDATABLE_USER_COLUMNS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        changes = {**changes, "updated_at": changes.get("updated_at") or utcnow()}
        with self._connect() as conn:
            current = conn.execute(
                "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not current:
                raise RecordNotFound("user not found", {"user_id": user_id})
            merged = _model_from_row(User, {**current, **changes})
            try:
                merged.check_mfa_invariant()
            except ValueError as exc:
                raise ConstraintViolation(
                    str(exc), {"user_id": user_id}, constraint="user_mfa"
                ) from exc
            assignments = ", ".join(f"{name} = %({name})s" for name in changes)
            try:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %(id)s RETURNING *",
                    {**changes, "id": user_id},
                ).fetchone()
            except errors.UniqueViolation:
                raise ConstraintViolation(
                    "email already registered", constraint="user_email"
                ) from None
        return _model_from_row(User, row)

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_minutes: int, now: datetime
    ) -> User:
        # An expired lock restarts the count at one.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN (CASE
                                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                                ELSE failed_login_attempts + 1
                              END) >= %(max_attempts)s
                            THEN %(now)s + make_interval(mins => %(lock_minutes)s)
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
                        ELSE locked_until
                    END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_minutes": lock_minutes,
                    "user_id": user_id,
                },
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return _model_from_row(User, row)

    def reset_failed_logins(
        self, user_id: str, *, last_login_at: Optional[datetime] = None
    ) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = 0,
                    locked_until = NULL,
                    last_login_at = COALESCE(%s, last_login_at),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (last_login_at, user_id),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return _model_from_row(User, row)

    # sessions

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, last_used_at, is_active, revoked, ip_address, user_agent, device_info)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                        session.last_used_at,
                        session.is_active,
                        session.revoked,
                        session.ip_address,
                        session.user_agent,
                        _json_or_none(session.device_info),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session user missing",
                {"user_id": session.user_id},
                constraint="session_user_fk",
            ) from None
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return _model_from_row(Session, row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s AND revoked = FALSE",
                (now, session_id),
            )
            return result.rowcount > 0

    def revoke_session(
        self,
        session_id: str,
        *,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, is_active = FALSE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                WHERE id = %s AND revoked = FALSE
                RETURNING id
                """,
                (now, revoked_by, reason, session_id),
            ).fetchone()
            conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                WHERE session_id = %s AND revoked = FALSE
                """,
                (now, revoked_by, reason, session_id),
            )
        return row is not None

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, is_active = FALSE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                WHERE user_id = %s AND revoked = FALSE AND (%s::text IS NULL OR id <> %s)
                RETURNING id
                """,
                (now, revoked_by, reason, user_id, except_session_id, except_session_id),
            ).fetchall()
            revoked_ids = [str(row["id"]) for row in rows]
            if revoked_ids:
                conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                    WHERE session_id = ANY(%s) AND revoked = FALSE
                    """,
                    (now, revoked_by, reason, revoked_ids),
                )
        return revoked_ids

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND revoked = FALSE AND expires_at > %s
                ORDER BY GREATEST(COALESCE(last_used_at, created_at), created_at) DESC
                """,
                (user_id, now),
            ).fetchall()
        return [_model_from_row(Session, row) for row in rows]

    # refresh tokens

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token_hash, user_id, session_id, created_at, expires_at, revoked)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.user_id,
                        token.session_id,
                        token.created_at,
                        token.expires_at,
                        token.revoked,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token exists", constraint="refresh_token_hash"
            ) from None
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token session missing",
                {"session_id": token.session_id},
                constraint="refresh_token_session_fk",
            ) from None
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _model_from_row(RefreshToken, row) if row else None

    def revoke_refresh_token(
        self,
        token_hash: str,
        *,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_by = %s, revocation_reason = %s,
                    replaced_by_token = COALESCE(%s, replaced_by_token)
                WHERE token_hash = %s AND revoked = FALSE
                RETURNING id
                """,
                (now, revoked_by, reason, replaced_by, token_hash),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revocation_reason = %s
                WHERE user_id = %s AND revoked = FALSE
                """,
                (now, reason, user_id),
            )
            return result.rowcount

    # password history

    def add_password_history(self, entry: PasswordHistoryEntry) -> PasswordHistoryEntry:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO password_history (id, user_id, password_hash, created_at) VALUES (%s, %s, %s, %s)",
                    (entry.id, entry.user_id, entry.password_hash, entry.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user does not exist",
                {"user_id": entry.user_id},
                constraint="password_history_user_fk",
            ) from None
        return entry

    def list_password_history(
        self, user_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_history
                WHERE user_id = %s
                ORDER BY created_at DESC, seq DESC
                LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [_model_from_row(PasswordHistoryEntry, row) for row in rows]

    def prune_password_history(self, user_id: str, keep: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM password_history
                WHERE user_id = %s AND id NOT IN (
                    SELECT id FROM password_history
                    WHERE user_id = %s
                    ORDER BY created_at DESC, seq DESC
                    LIMIT %s
                )
                """,
                (user_id, user_id, keep),
            )
            return result.rowcount

    # tenants

    def create_tenant(self, tenant: Tenant) -> Tenant:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant (id, name, slug, is_active, settings, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant.id,
                        tenant.name,
                        tenant.slug,
                        tenant.is_active,
                        _json_or_none(tenant.settings),
                        tenant.created_at,
                        tenant.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "tenant slug taken", {"slug": tenant.slug}, constraint="tenant_slug"
            ) from None
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE id = %s AND deleted_at IS NULL", (tenant_id,)
            ).fetchone()
        return _model_from_row(Tenant, row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE slug = %s", (slug,)).fetchone()
        return _model_from_row(Tenant, row) if row else None

    def add_membership(self, membership: TenantMembership) -> TenantMembership:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant_membership (id, user_id, tenant_id, role, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        membership.id,
                        membership.user_id,
                        membership.tenant_id,
                        membership.role,
                        membership.created_at,
                        membership.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership exists",
                {"user_id": membership.user_id, "tenant_id": membership.tenant_id},
                constraint="membership_user_tenant",
            ) from None
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "membership user or tenant missing", constraint="membership_fk"
            ) from None
        return membership

    def get_membership(
        self, user_id: str, tenant_id: str
    ) -> Optional[TenantMembership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM tenant_membership
                WHERE user_id = %s AND tenant_id = %s AND deleted_at IS NULL
                """,
                (user_id, tenant_id),
            ).fetchone()
        return _model_from_row(TenantMembership, row) if row else None

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tenant_membership
                WHERE user_id = %s AND deleted_at IS NULL
                ORDER BY created_at ASC
                """,
                (user_id,),
            ).fetchall()
        return [_model_from_row(TenantMembership, row) for row in rows]

    def update_membership_role(
        self, user_id: str, tenant_id: str, role: str, now: datetime
    ) -> TenantMembership:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE tenant_membership SET role = %s, updated_at = %s
                WHERE user_id = %s AND tenant_id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (role, now, user_id, tenant_id),
            ).fetchone()
        if not row:
            raise RecordNotFound(
                "membership not found", {"user_id": user_id, "tenant_id": tenant_id}
            )
        return _model_from_row(TenantMembership, row)

    def remove_membership(self, user_id: str, tenant_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE tenant_membership SET deleted_at = %s, updated_at = %s
                WHERE user_id = %s AND tenant_id = %s AND deleted_at IS NULL
                """,
                (now, now, user_id, tenant_id),
            )
            return result.rowcount > 0

    # system settings

    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM system_setting").fetchall()
        settings: Dict[str, Any] = {}
        for row in rows:
            value = row.get("value")
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError:
                    self.logger.warning("system_setting_parse_failed", key=row.get("key"))
            settings[row["key"]] = value
        return settings

    def set_system_setting(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_setting (key, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
                """,
                (key, json.dumps(value)),
            )


__all__ = ["PostgresStore"]
