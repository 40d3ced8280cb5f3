from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import secrets
import threading
from dataclasses import fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken

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


def _datetime_fields(model: Type) -> set[str]:
    return {f.name for f in fields(model) if "datetime" in str(f.type)}


_DATETIME_FIELDS = {
    model: _datetime_fields(model)
    for model in (User, Session, RefreshToken, PasswordHistoryEntry, Tenant, TenantMembership)
}


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every public method holds ``_data_lock`` for its whole duration so the
    compound writes (failed-login counting, conditional refresh revocation,
    session cascades) are atomic with respect to other threads. Callers get
    copies; mutating a returned object never changes stored state.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/tenantauth",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.memberships: Dict[str, TenantMembership] = {}
        self.system_settings: Dict[str, Any] = {}
        # RLock so compound operations can call helpers that lock again
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            key_path = self.fs_root / ".mfa_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = ""
            if not material:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted") from None

    # users

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation(
                    "user id exists", {"user_id": user.id}, constraint="user_pkey"
                )
            if self._find_user_by_email(user.email):
                raise ConstraintViolation(
                    "email already registered", constraint="user_email"
                )
            self._check_mfa(user)
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        for user in self.users.values():
            if user.email.lower() == needle:
                return user
        return None

    @staticmethod
    def _check_mfa(user: User) -> None:
        try:
            user.check_mfa_invariant()
        except ValueError as exc:
            raise ConstraintViolation(str(exc), {"user_id": user.id}, constraint="user_mfa") from exc

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return copy.deepcopy(user) if user else None

    def get_user_by_token(self, kind: str, token: str) -> Optional[User]:
        attr = TOKEN_KINDS.get(kind)
        if attr is None:
            raise ValueError(f"unknown token kind: {kind}")
        if not token:
            return None
        with self._data_lock:
            for user in self.users.values():
                if getattr(user, attr) == token:
                    return copy.deepcopy(user)
            return None

    def update_user(self, user_id: str, **changes: Any) -> User:
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if "email" in changes:
                other = self._find_user_by_email(changes["email"])
                if other and other.id != user_id:
                    raise ConstraintViolation(
                        "email already registered", constraint="user_email"
                    )
            try:
                updated = replace(current, **{"updated_at": utcnow(), **changes})
            except TypeError as exc:
                raise ValueError(f"unknown user field: {exc}") from exc
            self._check_mfa(updated)
            self.users[user_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_minutes: int, now: datetime
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            attempts = user.failed_login_attempts
            if user.locked_until is not None and user.locked_until <= now:
                # an expired lock starts a fresh window
                attempts = 0
                user.locked_until = None
            attempts += 1
            user.failed_login_attempts = attempts
            if attempts >= max_attempts:
                user.locked_until = now + timedelta(minutes=lock_minutes)
            user.updated_at = now
            self._persist_state()
            return copy.deepcopy(user)

    def reset_failed_logins(
        self, user_id: str, *, last_login_at: Optional[datetime] = None
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            user.failed_login_attempts = 0
            user.locked_until = None
            if last_login_at is not None:
                user.last_login_at = last_login_at
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    # sessions

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": session.user_id},
                    constraint="session_user_fk",
                )
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked:
                return False
            sess.last_used_at = now
            self._persist_state()
            return True

    def _revoke_session_locked(
        self, sess: Session, revoked_by: Optional[str], reason: str, now: datetime
    ) -> bool:
        changed = False
        if not sess.revoked:
            sess.revoked = True
            sess.revoked_at = now
            sess.revoked_by = revoked_by
            sess.revocation_reason = reason
            sess.is_active = False
            changed = True
        for row in self.refresh_tokens.values():
            if row.session_id == sess.id and not row.revoked:
                self._revoke_token_locked(row, revoked_by, reason, now, None)
        return changed

    def revoke_session(
        self,
        session_id: str,
        *,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return False
            changed = self._revoke_session_locked(sess, revoked_by, reason, now)
            self._persist_state()
            return changed

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
    ) -> List[str]:
        with self._data_lock:
            revoked: List[str] = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.id == except_session_id:
                    continue
                if self._revoke_session_locked(sess, revoked_by, reason, now):
                    revoked.append(sess.id)
            if revoked:
                self._persist_state()
            return revoked

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                copy.deepcopy(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and not sess.revoked and sess.expires_at > now
            ]
        return sorted(active, key=lambda s: s.last_activity, reverse=True)

    # refresh tokens

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token exists", constraint="refresh_token_hash"
                )
            if token.session_id not in self.sessions:
                raise ConstraintViolation(
                    "session does not exist",
                    {"session_id": token.session_id},
                    constraint="refresh_token_session_fk",
                )
            self.refresh_tokens[token.token_hash] = copy.deepcopy(token)
            self._persist_state()
            return copy.deepcopy(token)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token_hash)
            return copy.deepcopy(row) if row else None

    @staticmethod
    def _revoke_token_locked(
        row: RefreshToken,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
        replaced_by: Optional[str],
    ) -> None:
        row.revoked = True
        row.revoked_at = now
        row.revoked_by = revoked_by
        row.revocation_reason = reason
        if replaced_by is not None:
            row.replaced_by_token = replaced_by

    def revoke_refresh_token(
        self,
        token_hash: str,
        *,
        revoked_by: Optional[str],
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            row = self.refresh_tokens.get(token_hash)
            if row is None or row.revoked:
                return False
            self._revoke_token_locked(row, revoked_by, reason, now, replaced_by)
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(
        self, user_id: str, *, reason: str, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and not row.revoked:
                    self._revoke_token_locked(row, None, reason, now, None)
                    count += 1
            if count:
                self._persist_state()
            return count

    # password history

    def add_password_history(self, entry: PasswordHistoryEntry) -> PasswordHistoryEntry:
        with self._data_lock:
            if entry.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist",
                    {"user_id": entry.user_id},
                    constraint="password_history_user_fk",
                )
            self.password_history.setdefault(entry.user_id, []).append(copy.deepcopy(entry))
            self._persist_state()
            return copy.deepcopy(entry)

    def _history_newest_first(self, user_id: str) -> List[PasswordHistoryEntry]:
        entries = list(enumerate(self.password_history.get(user_id, [])))
        # insertion order breaks ties between identical timestamps
        entries.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [entry for _, entry in entries]

    def list_password_history(
        self, user_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            return [copy.deepcopy(e) for e in self._history_newest_first(user_id)[:limit]]

    def prune_password_history(self, user_id: str, keep: int) -> int:
        with self._data_lock:
            ordered = self._history_newest_first(user_id)
            if len(ordered) <= keep:
                return 0
            kept = ordered[:keep]
            kept.reverse()
            self.password_history[user_id] = kept
            self._persist_state()
            return len(ordered) - keep

    # tenants

    def create_tenant(self, tenant: Tenant) -> Tenant:
        with self._data_lock:
            if any(t.slug == tenant.slug for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant slug taken", {"slug": tenant.slug}, constraint="tenant_slug"
                )
            self.tenants[tenant.id] = copy.deepcopy(tenant)
            self._persist_state()
            return copy.deepcopy(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if tenant is None or tenant.deleted_at is not None:
                return None
            return copy.deepcopy(tenant)

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.slug == slug:
                    return copy.deepcopy(tenant)
            return None

    def _live_membership(
        self, user_id: str, tenant_id: str
    ) -> Optional[TenantMembership]:
        for membership in self.memberships.values():
            if (
                membership.user_id == user_id
                and membership.tenant_id == tenant_id
                and membership.deleted_at is None
            ):
                return membership
        return None

    def add_membership(self, membership: TenantMembership) -> TenantMembership:
        with self._data_lock:
            if membership.user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", constraint="membership_user_fk"
                )
            if membership.tenant_id not in self.tenants:
                raise ConstraintViolation(
                    "tenant does not exist", constraint="membership_tenant_fk"
                )
            if self._live_membership(membership.user_id, membership.tenant_id):
                raise ConstraintViolation(
                    "membership exists",
                    {"user_id": membership.user_id, "tenant_id": membership.tenant_id},
                    constraint="membership_user_tenant",
                )
            self.memberships[membership.id] = copy.deepcopy(membership)
            self._persist_state()
            return copy.deepcopy(membership)

    def get_membership(
        self, user_id: str, tenant_id: str
    ) -> Optional[TenantMembership]:
        with self._data_lock:
            membership = self._live_membership(user_id, tenant_id)
            return copy.deepcopy(membership) if membership else None

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._data_lock:
            live = [
                copy.deepcopy(m)
                for m in self.memberships.values()
                if m.user_id == user_id and m.deleted_at is None
            ]
        return sorted(live, key=lambda m: m.created_at)

    def update_membership_role(
        self, user_id: str, tenant_id: str, role: str, now: datetime
    ) -> TenantMembership:
        with self._data_lock:
            membership = self._live_membership(user_id, tenant_id)
            if membership is None:
                raise RecordNotFound(
                    "membership not found", {"user_id": user_id, "tenant_id": tenant_id}
                )
            membership.role = role
            membership.updated_at = now
            self._persist_state()
            return copy.deepcopy(membership)

    def remove_membership(self, user_id: str, tenant_id: str, now: datetime) -> bool:
        with self._data_lock:
            membership = self._live_membership(user_id, tenant_id)
            if membership is None:
                return False
            membership.deleted_at = now
            membership.updated_at = now
            self._persist_state()
            return True

    # system settings

    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_setting(self, key: str, value: Any) -> None:
        with self._data_lock:
            self.system_settings[key] = value
            self._persist_state()

    # persistence

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = {}
        datetime_fields = _DATETIME_FIELDS[type(obj)]
        for f in fields(obj):
            value = getattr(obj, f.name)
            if f.name in datetime_fields and value is not None:
                value = value.isoformat()
            data[f.name] = value
        return data

    @staticmethod
    def _deserialize(model: Type[T], data: dict) -> T:
        known = {f.name for f in fields(model)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS[model] and value is not None:
                value = datetime.fromisoformat(value)
            kwargs[key] = value
        return model(**kwargs)

    def _serialize_user(self, user: User) -> dict:
        data = self._serialize(user)
        data["mfa_secret"] = self._encrypt_secret(user.mfa_secret)
        return data

    def _deserialize_user(self, data: dict) -> User:
        user = self._deserialize(User, data)
        user.mfa_secret = self._decrypt_secret(user.mfa_secret)
        return user

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "refresh_tokens": [self._serialize(r) for r in self.refresh_tokens.values()],
            "password_history": [
                self._serialize(entry)
                for entries in self.password_history.values()
                for entry in entries
            ],
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "memberships": [self._serialize(m) for m in self.memberships.values()],
            "system_settings": self.system_settings,
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize(RefreshToken, r)
            for r in data.get("refresh_tokens", [])
        }
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = self._deserialize(PasswordHistoryEntry, raw)
            self.password_history.setdefault(entry.user_id, []).append(entry)
        self.tenants = {
            t["id"]: self._deserialize(Tenant, t) for t in data.get("tenants", [])
        }
        self.memberships = {
            m["id"]: self._deserialize(TenantMembership, m)
            for m in data.get("memberships", [])
        }
        self.system_settings = data.get("system_settings", {})
        return True


__all__ = ["MemoryStore"]
