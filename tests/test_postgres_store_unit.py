from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from tokengate.logging import get_logger
from tokengate.storage.errors import LOGIN_RATE_LIMIT, ConstraintViolation
from tokengate.storage.postgres import PostgresStore, _constraint_violation

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class _UniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint_name):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint_name = constraint_name

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint_name)


class _CheckViolation(errors.CheckViolation):
    def __init__(self, constraint_name):
        super().__init__("new row violates check constraint")
        self._constraint_name = constraint_name

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint_name)


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    """Replays scripted results; an exception in the script is raised."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(results)

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    store.logger = get_logger("tests.postgres")
    return store


def _user_token_row(**overrides):
    row = {
        "id": "s-1",
        "user_id": "u-1",
        "login_token_id": "lt-1",
        "parent_user_token_id": None,
        "ip_address": None,
        "device": "Mac:Safari",
        "disconnected": False,
        "last_activity": NOW,
        "expires_at": NOW + timedelta(days=30),
        "created_at": NOW,
    }
    row.update(overrides)
    return row


class TestConstraintMapping:
    """IntegrityErrors are translated into field-tagged violations."""

    @pytest.mark.parametrize(
        "constraint,field",
        [
            ("users_pkey", "id"),
            ("users_email_key", "email"),
            ("admins_username_key", "username"),
            ("user_tokens_login_token_id_key", "login_token_id"),
            ("user_tokens_parent_user_token_id_key", "parent_user_token_id"),
        ],
    )
    def test_unique_constraints(self, constraint, field):
        assert _constraint_violation(_UniqueViolation(constraint)).field == field

    def test_derivation_check(self):
        violation = _constraint_violation(_CheckViolation("user_tokens_derived_from"))

        assert violation.field == "derived_from"

    def test_insert_maps_duplicate_email(self):
        store = _store(_UniqueViolation("users_email_key"))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("u-1", "a@b.com")

        assert exc_info.value.field == "email"

    def test_renewal_race_maps_to_parent_field(self):
        store = _store(_UniqueViolation("user_tokens_parent_user_token_id_key"))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user_token(
                "s-2", "u-1", "", "", NOW, parent_user_token_id="s-1", created_at=NOW
            )

        assert exc_info.value.field == "parent_user_token_id"


class TestStatements:
    """Conditional updates report whether they applied."""

    def test_decide_only_touches_pending_rows(self):
        store = _store(FakeCursor(rowcount=0))

        assert store.decide_login_token("lt-1", authorized=True) is False

        sql, params = store.pool.conn.statements[0]
        assert "SET authorized = TRUE" in sql
        assert "authorized = FALSE AND denied = FALSE" in sql
        assert params == ("lt-1",)

    def test_deny_sets_denied(self):
        store = _store(FakeCursor(rowcount=1))

        assert store.decide_login_token("lt-1", authorized=False) is True
        assert "SET denied = TRUE" in store.pool.conn.statements[0][0]

    def test_disconnect_only_once(self):
        store = _store(FakeCursor(rowcount=1), FakeCursor(rowcount=0))

        assert store.disconnect_user_token("s-1") is True
        assert store.disconnect_user_token("s-1") is False

    def test_first_admin_insert_is_guarded(self):
        store = _store(FakeCursor(), FakeCursor(row=None))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_admin("adm-2", "Second", "second", "hash", first_only=True)

        assert exc_info.value.field == "first_admin"
        statements = [sql for sql, _ in store.pool.conn.statements]
        assert statements[0].startswith("LOCK TABLE admins")
        assert "WHERE NOT EXISTS (SELECT 1 FROM admins)" in statements[1]

    def test_limited_login_insert_locks_email_first(self):
        row = {
            "id": "lt-4",
            "email": "a@b.com",
            "ip_address": "",
            "device": "",
            "authorized": False,
            "denied": False,
            "expires_at": NOW + timedelta(minutes=10),
            "created_at": NOW,
        }
        store = _store(
            FakeCursor(),
            FakeCursor(row={"active": 2, "latest": NOW - timedelta(seconds=5)}),
            FakeCursor(row=row),
        )

        token = store.create_login_token_limited(
            "lt-4", "a@b.com", "", "", NOW + timedelta(minutes=10),
            now=NOW, max_active=3, min_interval=timedelta(seconds=60),
        )

        assert token.id == "lt-4"
        statements = store.pool.conn.statements
        assert statements[0] == ("SELECT pg_advisory_xact_lock(hashtext(%s))", ("a@b.com",))
        assert "FILTER (WHERE expires_at > %s)" in statements[1][0]
        assert statements[2][0].startswith("INSERT INTO login_tokens")

    def test_limited_login_insert_refused_at_cap(self):
        store = _store(
            FakeCursor(),
            FakeCursor(row={"active": 3, "latest": NOW - timedelta(seconds=5)}),
        )

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_login_token_limited(
                "lt-4", "a@b.com", "", "", NOW + timedelta(minutes=10),
                now=NOW, max_active=3, min_interval=timedelta(seconds=60),
            )

        assert exc_info.value.field == LOGIN_RATE_LIMIT
        assert exc_info.value.detail["retry_after"] == 56
        assert len(store.pool.conn.statements) == 2

    def test_user_token_row_mapping(self):
        store = _store(FakeCursor(row=_user_token_row()))

        token = store.get_user_token("s-1")

        assert token.id == "s-1"
        assert token.ip_address == ""
        assert token.login_token_id == "lt-1"
        assert token.parent_user_token_id is None
        assert token.expires_at == NOW + timedelta(days=30)

    def test_missing_row_returns_none(self):
        store = _store(FakeCursor(row=None))

        assert store.get_user_token_by_parent("s-1") is None


class TestSchemaVerification:
    def test_missing_table_fails_startup(self):
        store = _store(
            FakeCursor(row={"oid": "admins"}),
            FakeCursor(row={"oid": "users"}),
            FakeCursor(row={"oid": None}),
            FakeCursor(row={"oid": "user_tokens"}),
            FakeCursor(row={"oid": "email_settings"}),
        )

        with pytest.raises(RuntimeError, match="login_tokens"):
            store._verify_required_schema()
