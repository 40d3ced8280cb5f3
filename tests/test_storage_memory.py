"""Tests for the in-process MemoryStore."""

import json
import threading
import uuid
from datetime import timedelta

import pytest

from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.models import (
    PasswordHistoryEntry,
    RefreshToken,
    Session,
    Tenant,
    TenantMembership,
    User,
    utcnow,
)


def _user(store, email="user@example.com", **kwargs):
    return store.create_user(
        User(id=str(uuid.uuid4()), email=email, password_hash="hash", **kwargs)
    )


def _session(store, user_id):
    return store.create_session(Session.new(user_id, 24))


def _token(store, user_id, session_id, token_hash=None):
    return store.create_refresh_token(
        RefreshToken.new(token_hash or uuid.uuid4().hex, user_id, session_id, 3600)
    )


class TestUsers:
    """User rows and their constraints."""

    def test_email_is_unique_case_insensitive(self, memory_store):
        _user(memory_store, "Someone@Example.com")
        with pytest.raises(ConstraintViolation) as exc:
            _user(memory_store, "someone@example.com")
        assert exc.value.constraint == "user_email"
        assert memory_store.get_user_by_email("SOMEONE@example.COM") is not None

    def test_returned_objects_are_copies(self, memory_store):
        user = _user(memory_store)
        user.email = "changed@example.com"
        assert memory_store.get_user(user.id).email == "user@example.com"

    def test_mfa_enabled_requires_type_and_secret(self, memory_store):
        user = _user(memory_store)
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.update_user(user.id, mfa_enabled=True)
        assert exc.value.constraint == "user_mfa"

    def test_update_unknown_user_raises(self, memory_store):
        with pytest.raises(RecordNotFound):
            memory_store.update_user("missing", first_name="x")

    def test_get_user_by_token_kinds(self, memory_store):
        user = _user(memory_store, reset_token="reset-abc")
        assert memory_store.get_user_by_token("reset", "reset-abc").id == user.id
        assert memory_store.get_user_by_token("recovery", "reset-abc") is None
        with pytest.raises(ValueError):
            memory_store.get_user_by_token("bogus", "reset-abc")


class TestFailedLogins:
    """Failed login counting is atomic and locks at the threshold."""

    def test_locks_at_threshold(self, memory_store):
        user = _user(memory_store)
        now = utcnow()
        for _ in range(2):
            updated = memory_store.record_failed_login(
                user.id, max_attempts=3, lock_minutes=10, now=now
            )
            assert updated.locked_until is None
        updated = memory_store.record_failed_login(
            user.id, max_attempts=3, lock_minutes=10, now=now
        )
        assert updated.failed_login_attempts == 3
        assert updated.locked_until == now + timedelta(minutes=10)

    def test_expired_lock_starts_fresh_window(self, memory_store):
        user = _user(memory_store)
        past = utcnow() - timedelta(hours=1)
        for _ in range(3):
            memory_store.record_failed_login(user.id, max_attempts=3, lock_minutes=10, now=past)
        updated = memory_store.record_failed_login(
            user.id, max_attempts=3, lock_minutes=10, now=utcnow()
        )
        assert updated.failed_login_attempts == 1
        assert updated.locked_until is None

    def test_concurrent_failures_are_all_counted(self, memory_store):
        user = _user(memory_store)
        now = utcnow()

        def fail():
            memory_store.record_failed_login(user.id, max_attempts=100, lock_minutes=1, now=now)

        threads = [threading.Thread(target=fail) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert memory_store.get_user(user.id).failed_login_attempts == 20

    def test_reset_clears_lock(self, memory_store):
        user = _user(memory_store)
        now = utcnow()
        for _ in range(3):
            memory_store.record_failed_login(user.id, max_attempts=3, lock_minutes=10, now=now)
        reset = memory_store.reset_failed_logins(user.id, last_login_at=now)
        assert reset.failed_login_attempts == 0
        assert reset.locked_until is None
        assert reset.last_login_at == now


class TestSessionsAndTokens:
    """Session cascade and conditional refresh revocation."""

    def test_session_requires_user(self, memory_store):
        with pytest.raises(ConstraintViolation) as exc:
            _session(memory_store, "ghost")
        assert exc.value.constraint == "session_user_fk"

    def test_revoke_session_cascades_to_tokens(self, memory_store):
        user = _user(memory_store)
        sess = _session(memory_store, user.id)
        other = _session(memory_store, user.id)
        t1 = _token(memory_store, user.id, sess.id)
        t2 = _token(memory_store, user.id, other.id)

        assert memory_store.revoke_session(sess.id, revoked_by=user.id, reason="User logout", now=utcnow())
        assert memory_store.get_refresh_token(t1.token_hash).revoked
        assert memory_store.get_refresh_token(t1.token_hash).revocation_reason == "User logout"
        assert not memory_store.get_refresh_token(t2.token_hash).revoked
        # second call performs no transition
        assert not memory_store.revoke_session(sess.id, revoked_by=None, reason="again", now=utcnow())

    def test_revoke_refresh_token_is_conditional(self, memory_store):
        user = _user(memory_store)
        sess = _session(memory_store, user.id)
        row = _token(memory_store, user.id, sess.id)
        now = utcnow()
        assert memory_store.revoke_refresh_token(
            row.token_hash, revoked_by=user.id, reason="rotated", now=now, replaced_by="next"
        )
        assert not memory_store.revoke_refresh_token(
            row.token_hash, revoked_by=user.id, reason="rotated", now=now, replaced_by="other"
        )
        assert memory_store.get_refresh_token(row.token_hash).replaced_by_token == "next"

    def test_revoke_user_sessions_keeps_current(self, memory_store):
        user = _user(memory_store)
        keep = _session(memory_store, user.id)
        drop = _session(memory_store, user.id)
        revoked = memory_store.revoke_user_sessions(
            user.id, except_session_id=keep.id, revoked_by=user.id, reason="others", now=utcnow()
        )
        assert revoked == [drop.id]
        active = memory_store.list_active_sessions(user.id, utcnow())
        assert [s.id for s in active] == [keep.id]

    def test_revoke_all_user_refresh_tokens(self, memory_store):
        user = _user(memory_store)
        sess = _session(memory_store, user.id)
        _token(memory_store, user.id, sess.id)
        _token(memory_store, user.id, sess.id)
        assert memory_store.revoke_user_refresh_tokens(user.id, reason="password_reset", now=utcnow()) == 2
        assert memory_store.revoke_user_refresh_tokens(user.id, reason="password_reset", now=utcnow()) == 0


class TestPasswordHistory:
    """History is newest first and prunable."""

    def test_prune_keeps_newest(self, memory_store):
        user = _user(memory_store)
        base = utcnow()
        for i in range(5):
            memory_store.add_password_history(
                PasswordHistoryEntry(
                    id=str(i), user_id=user.id, password_hash=f"h{i}", created_at=base + timedelta(seconds=i)
                )
            )
        assert memory_store.prune_password_history(user.id, 3) == 2
        hashes = [e.password_hash for e in memory_store.list_password_history(user.id, 10)]
        assert hashes == ["h4", "h3", "h2"]


class TestTenants:
    """Tenants and soft-deleted memberships."""

    def test_one_live_membership_per_user_and_tenant(self, memory_store):
        user = _user(memory_store)
        tenant = memory_store.create_tenant(Tenant(id="t1", name="Acme", slug="acme"))
        memory_store.add_membership(TenantMembership(id="m1", user_id=user.id, tenant_id=tenant.id))
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.add_membership(
                TenantMembership(id="m2", user_id=user.id, tenant_id=tenant.id)
            )
        assert exc.value.constraint == "membership_user_tenant"

    def test_removed_membership_is_invisible_and_re_addable(self, memory_store):
        user = _user(memory_store)
        memory_store.create_tenant(Tenant(id="t1", name="Acme", slug="acme"))
        memory_store.add_membership(TenantMembership(id="m1", user_id=user.id, tenant_id="t1"))
        assert memory_store.remove_membership(user.id, "t1", utcnow())
        assert memory_store.get_membership(user.id, "t1") is None
        assert memory_store.list_memberships(user.id) == []
        memory_store.add_membership(TenantMembership(id="m2", user_id=user.id, tenant_id="t1"))
        assert memory_store.get_membership(user.id, "t1").id == "m2"

    def test_duplicate_slug_rejected(self, memory_store):
        memory_store.create_tenant(Tenant(id="t1", name="Acme", slug="acme"))
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_tenant(Tenant(id="t2", name="Acme", slug="acme"))
        assert exc.value.constraint == "tenant_slug"


class TestPersistence:
    """State survives a reload; MFA secrets are encrypted at rest."""

    def test_reload_restores_state(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        user = _user(store)
        sess = _session(store, user.id)
        store.set_system_setting("auth.access_token_ttl", 60)

        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        assert reloaded.get_user(user.id).email == user.email
        assert reloaded.get_session(sess.id).expires_at == sess.expires_at
        assert reloaded.get_system_settings() == {"auth.access_token_ttl": 60}

    def test_mfa_secret_encrypted_on_disk(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        user = _user(store, mfa_type="totp", mfa_secret="JBSWY3DPEHPK3PXP")
        raw = json.loads((tmp_path / "state" / "auth_store.json").read_text())
        assert raw["users"][0]["mfa_secret"] != "JBSWY3DPEHPK3PXP"
        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        assert reloaded.get_user(user.id).mfa_secret == "JBSWY3DPEHPK3PXP"

    def test_wrong_key_refuses_to_load(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="k")
        _user(store, mfa_type="totp", mfa_secret="JBSWY3DPEHPK3PXP")
        with pytest.raises(RuntimeError):
            MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="other")
