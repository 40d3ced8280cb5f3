"""PostgresStore unit tests against scripted fake connections (no database)."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from tenantauth.storage.errors import ConstraintViolation, RecordNotFound
from tenantauth.storage.models import User
from tenantauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Replays scripted results in order and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(*results):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://fake"
    store.pool = FakePool(*results)
    return store


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": "u1",
        "email": "a@example.com",
        "password_hash": "hash",
        "role": "user",
        "is_active": True,
        "failed_login_attempts": 0,
        "locked_until": None,
        "mfa_enabled": False,
        "mfa_type": None,
        "mfa_secret": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestSchemaCheck:
    """Startup refuses to run without the auth tables."""

    def test_missing_tables_are_named(self):
        present = [FakeCursor([{"oid": "x"}])] * (len(PostgresStore.required_tables) - 1)
        store = _store(FakeCursor([{"oid": None}]), *present)
        with pytest.raises(RuntimeError) as exc:
            store._verify_required_schema()
        assert "app_user" in str(exc.value)


class TestUsers:
    """User queries and constraint mapping."""

    def test_get_user_by_email_is_case_insensitive(self):
        store = _store(FakeCursor([_user_row()]))
        user = store.get_user_by_email(" A@Example.com ")
        sql, params = store.pool.conn.executed[0]
        assert "lower(email) = lower(%s)" in sql
        assert params == ("A@Example.com",)
        assert user.id == "u1"

    def test_duplicate_email_maps_to_constraint(self):
        store = _store(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user(User(id="u1", email="a@example.com", password_hash="h"))
        assert exc.value.constraint == "user_email"

    def test_update_user_rejects_unknown_columns(self):
        store = _store()
        with pytest.raises(ValueError):
            store.update_user("u1", not_a_column=1)
        assert store.pool.conn.executed == []

    def test_update_user_checks_mfa_invariant_before_writing(self):
        store = _store(FakeCursor([_user_row()]))
        with pytest.raises(ConstraintViolation) as exc:
            store.update_user("u1", mfa_enabled=True)
        assert exc.value.constraint == "user_mfa"
        assert len(store.pool.conn.executed) == 1

    def test_record_failed_login_is_single_statement(self):
        locked = datetime.now(timezone.utc) + timedelta(minutes=5)
        store = _store(FakeCursor([_user_row(failed_login_attempts=3, locked_until=locked)]))
        user = store.record_failed_login(
            "u1", max_attempts=3, lock_minutes=5, now=datetime.now(timezone.utc)
        )
        assert len(store.pool.conn.executed) == 1
        sql, params = store.pool.conn.executed[0]
        assert sql.startswith("UPDATE app_user SET")
        assert "RETURNING *" in sql
        assert params["max_attempts"] == 3
        assert user.locked_until == locked

    def test_record_failed_login_unknown_user(self):
        store = _store(FakeCursor([]))
        with pytest.raises(RecordNotFound):
            store.record_failed_login("nope", max_attempts=3, lock_minutes=5, now=datetime.now(timezone.utc))


class TestRevocation:
    """Conditional writes and the session cascade."""

    def test_revoke_session_cascades_on_one_connection(self):
        store = _store(FakeCursor([{"id": "s1"}]), FakeCursor(rowcount=2))
        assert store.revoke_session("s1", revoked_by="u1", reason="User logout", now=datetime.now(timezone.utc))
        assert store.pool.checkouts == 1
        statements = [sql for sql, _ in store.pool.conn.executed]
        assert statements[0].startswith("UPDATE auth_session")
        assert statements[1].startswith("UPDATE refresh_token")
        assert "WHERE session_id = %s AND revoked = FALSE" in statements[1]

    def test_revoke_refresh_token_reports_lost_race(self):
        store = _store(FakeCursor([]))
        won = store.revoke_refresh_token(
            "hash", revoked_by="u1", reason="rotated", now=datetime.now(timezone.utc), replaced_by="next"
        )
        assert won is False
        sql, params = store.pool.conn.executed[0]
        assert "WHERE token_hash = %s AND revoked = FALSE" in sql
        assert params[3] == "next"

    def test_revoke_user_sessions_skips_token_update_when_none_revoked(self):
        store = _store(FakeCursor([]))
        revoked = store.revoke_user_sessions(
            "u1", except_session_id="s1", revoked_by="u1", reason="x", now=datetime.now(timezone.utc)
        )
        assert revoked == []
        assert len(store.pool.conn.executed) == 1
