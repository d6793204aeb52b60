"""Unit tests for PostgresStore SQL construction against a recording fake pool."""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import TodoQuery
from tasktrack.storage.postgres import PostgresStore, _as_uuid, _escape_like

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = list(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses=None, raise_on_execute=None):
        self.executed = []
        self.responses = list(responses or [])
        self.raise_on_execute = raise_on_execute

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        rows = self.responses.pop(0) if self.responses else []
        return FakeCursor(rows)


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _store(conn):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://example"
    store.logger = get_logger(__name__)
    store.pool = FakePool(conn)
    return store


def _todo_row(title="t", owner_id=None):
    return {
        "id": uuid.uuid4(),
        "title": title,
        "description": None,
        "is_completed": False,
        "owner_id": owner_id or uuid.uuid4(),
        "created_at": NOW,
        "updated_at": NOW,
    }


def _user_row(email="a@example.com"):
    return {
        "id": uuid.uuid4(),
        "email": email,
        "name": "A",
        "password_hash": "hash",
        "created_at": NOW,
        "updated_at": NOW,
        "two_factor_enabled": True,
        "two_factor_secret": "SECRET",
        "backup_codes": None,
    }


class TestHelpers:
    """Tests for module-level helpers."""

    def test_escape_like(self):
        assert _escape_like("50%_off\\") == "50\\%\\_off\\\\"
        assert _escape_like("plain") == "plain"

    def test_as_uuid(self):
        value = uuid.uuid4()
        assert _as_uuid(str(value)) == value
        assert _as_uuid("not-a-uuid") is None
        assert _as_uuid(None) is None


class TestUsers:
    """Tests for user queries and constraint mapping."""

    def test_get_user_with_malformed_id_skips_query(self):
        conn = FakeConnection()
        store = _store(conn)
        assert store.get_user("nope") is None
        assert conn.executed == []

    def test_get_user_by_email_is_case_insensitive(self):
        conn = FakeConnection(responses=[[_user_row()]])
        user = _store(conn).get_user_by_email("A@Example.com")
        sql, params = conn.executed[0]
        assert "lower(email) = lower(%s)" in sql
        assert params == ("A@Example.com",)
        assert user.two_factor_enabled is True
        assert user.backup_codes == []

    def test_duplicate_email_maps_to_constraint_violation(self):
        conn = FakeConnection(raise_on_execute=errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as exc_info:
            _store(conn).create_user("a@example.com", "A", "hash")
        assert exc_info.value.detail == {"field": "email"}

    def test_consume_backup_code_is_conditional_update(self):
        user_id = str(uuid.uuid4())
        conn = FakeConnection(responses=[[{"id": user_id}], []])
        store = _store(conn)
        assert store.consume_backup_code(user_id, "digest") is True
        assert store.consume_backup_code(user_id, "digest") is False
        sql, params = conn.executed[0]
        assert "array_remove(backup_codes, %s)" in sql
        assert "%s = ANY(backup_codes)" in sql
        assert params == ("digest", uuid.UUID(user_id), "digest")


class TestTargetedUserWrites:
    """Each user write touches only its own columns and carries its precondition."""

    def test_update_email_sets_only_email(self):
        user_id = str(uuid.uuid4())
        conn = FakeConnection(responses=[[_user_row("new@example.com")]])
        user = _store(conn).update_email(user_id, "new@example.com")
        sql, params = conn.executed[0]
        assert sql == "UPDATE users SET email = %s, updated_at = now() WHERE id = %s RETURNING *"
        assert "backup_codes" not in sql
        assert params == ("new@example.com", uuid.UUID(user_id))
        assert user.email == "new@example.com"

    def test_update_email_conflict(self):
        conn = FakeConnection(raise_on_execute=errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            _store(conn).update_email(str(uuid.uuid4()), "taken@example.com")

    def test_enable_only_when_not_enabled(self):
        conn = FakeConnection(responses=[[]])
        assert _store(conn).enable_two_factor(str(uuid.uuid4()), "SECRET") is None
        sql, params = conn.executed[0]
        assert "WHERE id = %s AND NOT two_factor_enabled" in sql
        assert "backup_codes = '{}'" in sql
        assert params[0] == "SECRET"

    def test_verify_is_conditional_on_secret(self):
        user_id = str(uuid.uuid4())
        conn = FakeConnection(responses=[[_user_row()]])
        _store(conn).verify_two_factor(user_id, "SECRET")
        sql, params = conn.executed[0]
        assert "SET two_factor_enabled = TRUE" in sql
        assert "WHERE id = %s AND two_factor_secret = %s" in sql
        assert params == (uuid.UUID(user_id), "SECRET")

    def test_backup_codes_only_while_enabled(self):
        conn = FakeConnection(responses=[[]])
        assert _store(conn).set_backup_codes(str(uuid.uuid4()), ["d1", "d2"]) is None
        sql, params = conn.executed[0]
        assert "WHERE id = %s AND two_factor_enabled" in sql
        assert params[0] == ["d1", "d2"]

    def test_disable_clears_secret_and_codes(self):
        conn = FakeConnection(responses=[[_user_row()]])
        _store(conn).disable_two_factor(str(uuid.uuid4()))
        sql, _ = conn.executed[0]
        assert "two_factor_secret = NULL" in sql
        assert "backup_codes = '{}'" in sql

    def test_malformed_ids_skip_the_query(self):
        conn = FakeConnection()
        store = _store(conn)
        assert store.update_email("bad", "x@example.com") is None
        assert store.enable_two_factor("bad", "S") is None
        assert store.verify_two_factor("bad", "S") is None
        assert store.disable_two_factor("bad") is None
        assert store.set_backup_codes("bad", []) is None
        assert conn.executed == []


class TestTodoQueries:
    """Tests for list_todos() SQL."""

    def test_filters_and_paging(self):
        owner = str(uuid.uuid4())
        conn = FakeConnection(responses=[[{"total": 12}], [_todo_row("a"), _todo_row("b")]])
        page = _store(conn).list_todos(
            owner,
            TodoQuery(page=3, page_size=5, search="50%", is_completed=True, sort_by="title", sort_order="asc"),
        )
        count_sql, count_params = conn.executed[0]
        list_sql, list_params = conn.executed[1]
        assert count_sql.startswith("SELECT COUNT(*) AS total FROM todos WHERE owner_id = %s")
        assert "(title ILIKE %s OR description ILIKE %s)" in count_sql
        assert "is_completed = %s" in count_sql
        assert count_params == [uuid.UUID(owner), "%50\\%%", "%50\\%%", True]
        assert "ORDER BY lower(title) ASC, id ASC LIMIT %s OFFSET %s" in list_sql
        assert list_params[-2:] == [5, 10]
        assert page.total == 12
        assert page.total_pages == 3
        assert [t.title for t in page.todos] == ["a", "b"]
        assert page.todos[0].description == ""

    def test_unknown_sort_falls_back_to_created_at(self):
        conn = FakeConnection(responses=[[{"total": 0}], []])
        _store(conn).list_todos(
            str(uuid.uuid4()), TodoQuery(sort_by="password_hash; DROP TABLE users", sort_order="sideways")
        )
        list_sql, _ = conn.executed[1]
        assert "ORDER BY created_at DESC, id ASC" in list_sql
        assert "DROP" not in list_sql

    def test_malformed_owner_returns_empty_page(self):
        conn = FakeConnection()
        page = _store(conn).list_todos("bad", TodoQuery())
        assert page.total == 0
        assert conn.executed == []


class TestTodoWrites:
    """Tests for todo writes."""

    def test_missing_owner_maps_to_constraint_violation(self):
        conn = FakeConnection(raise_on_execute=errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            _store(conn).create_todo(str(uuid.uuid4()), "t", "")

    def test_partial_update_uses_coalesce(self):
        todo_id = str(uuid.uuid4())
        conn = FakeConnection(responses=[[_todo_row("new")]])
        todo = _store(conn).update_todo(todo_id, title="new")
        sql, params = conn.executed[0]
        assert "title = COALESCE(%s, title)" in sql
        assert params == ("new", None, None, uuid.UUID(todo_id))
        assert todo.title == "new"

    def test_delete_reports_whether_a_row_was_removed(self):
        conn = FakeConnection(responses=[[{"id": uuid.uuid4()}], []])
        store = _store(conn)
        todo_id = str(uuid.uuid4())
        assert store.delete_todo(todo_id) is True
        assert store.delete_todo(todo_id) is False
        assert store.delete_todo("bad") is False


class TestLifecycle:
    """Tests for schema setup and pool lifecycle."""

    def test_ensure_schema_creates_tables(self):
        conn = FakeConnection()
        store = _store(conn)
        store._ensure_schema()
        statements = [sql for sql, _ in conn.executed]
        assert any("CREATE TABLE IF NOT EXISTS users" in s for s in statements)
        assert any("CREATE TABLE IF NOT EXISTS todos" in s for s in statements)
        assert any("users_email_lower_idx" in s for s in statements)

    def test_close_closes_pool(self):
        store = _store(FakeConnection())
        store.close()
        assert store.pool.closed
