from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Todo, TodoPage, TodoQuery, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS todos (
        id UUID PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        is_completed BOOLEAN NOT NULL DEFAULT FALSE,
        owner_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS todos_owner_idx ON todos (owner_id, created_at DESC)",
)


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Postgres-backed user and todo store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``todos`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=row.get("two_factor_secret"),
            backup_codes=list(row.get("backup_codes") or []),
        )

    @staticmethod
    def _row_to_todo(row: Dict[str, Any]) -> Todo:
        return Todo(
            id=str(row["id"]),
            title=row["title"],
            description=row.get("description") or "",
            owner_id=str(row["owner_id"]),
            is_completed=bool(row["is_completed"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # users
    def create_user(self, email: str, name: str, password_hash: str) -> User:
        user = User.new(email=email, name=name, password_hash=password_hash)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, password_hash, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.password_hash,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        key = _as_uuid(user_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (key,)).fetchone()
        return self._row_to_user(row) if row else None

    def _update_returning(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_user(row) if row else None

    def update_email(self, user_id: str, email: str) -> Optional[User]:
        key = _as_uuid(user_id)
        if key is None:
            return None
        try:
            return self._update_returning(
                "UPDATE users SET email = %s, updated_at = now() WHERE id = %s RETURNING *",
                (email, key),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def enable_two_factor(self, user_id: str, secret: str) -> Optional[User]:
        """Store a pending secret and drop backup codes; None if missing or already enabled."""
        key = _as_uuid(user_id)
        if key is None:
            return None
        return self._update_returning(
            """
            UPDATE users
            SET two_factor_secret = %s,
                two_factor_enabled = FALSE,
                backup_codes = '{}',
                updated_at = now()
            WHERE id = %s AND NOT two_factor_enabled
            RETURNING *
            """,
            (secret, key),
        )

    def verify_two_factor(self, user_id: str, secret: str) -> Optional[User]:
        """Turn 2FA on only while ``secret`` is still the stored one."""
        key = _as_uuid(user_id)
        if key is None:
            return None
        return self._update_returning(
            """
            UPDATE users
            SET two_factor_enabled = TRUE, updated_at = now()
            WHERE id = %s AND two_factor_secret = %s
            RETURNING *
            """,
            (key, secret),
        )

    def disable_two_factor(self, user_id: str) -> Optional[User]:
        key = _as_uuid(user_id)
        if key is None:
            return None
        return self._update_returning(
            """
            UPDATE users
            SET two_factor_enabled = FALSE,
                two_factor_secret = NULL,
                backup_codes = '{}',
                updated_at = now()
            WHERE id = %s
            RETURNING *
            """,
            (key,),
        )

    def set_backup_codes(self, user_id: str, digests: List[str]) -> Optional[User]:
        key = _as_uuid(user_id)
        if key is None:
            return None
        return self._update_returning(
            """
            UPDATE users
            SET backup_codes = %s, updated_at = now()
            WHERE id = %s AND two_factor_enabled
            RETURNING *
            """,
            (list(digests), key),
        )

    def consume_backup_code(self, user_id: str, digest: str) -> bool:
        """Atomically remove ``digest`` from the stored set; False if already gone."""
        key = _as_uuid(user_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET backup_codes = array_remove(backup_codes, %s),
                    updated_at = now()
                WHERE id = %s AND %s = ANY(backup_codes)
                RETURNING id
                """,
                (digest, key, digest),
            ).fetchone()
        return row is not None

    # todos
    def list_todos(self, owner_id: str, query: TodoQuery) -> TodoPage:
        q = query.normalized()
        key = _as_uuid(owner_id)
        if key is None:
            return TodoPage(todos=[], total=0, page=q.page, page_size=q.page_size)
        clauses: List[str] = ["owner_id = %s"]
        params: List[Any] = [key]
        if q.search:
            clauses.append("(title ILIKE %s OR description ILIKE %s)")
            pattern = f"%{_escape_like(q.search)}%"
            params.extend([pattern, pattern])
        if q.is_completed is not None:
            clauses.append("is_completed = %s")
            params.append(q.is_completed)
        where = " AND ".join(clauses)
        # sort_by and sort_order are drawn from a fixed whitelist by normalized()
        column = "lower(title)" if q.sort_by == "title" else q.sort_by
        order = f"{column} {q.sort_order.upper()}, id ASC"
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM todos WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM todos WHERE {where} ORDER BY {order} LIMIT %s OFFSET %s",
                [*params, q.page_size, q.offset],
            ).fetchall()
        return TodoPage(
            todos=[self._row_to_todo(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
            page=q.page,
            page_size=q.page_size,
        )

    def get_todo(self, todo_id: str) -> Optional[Todo]:
        key = _as_uuid(todo_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM todos WHERE id = %s", (key,)).fetchone()
        return self._row_to_todo(row) if row else None

    def create_todo(self, owner_id: str, title: str, description: str) -> Todo:
        todo = Todo.new(owner_id=owner_id, title=title, description=description)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO todos (id, title, description, is_completed, owner_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        todo.id,
                        todo.title,
                        todo.description,
                        todo.is_completed,
                        todo.owner_id,
                        todo.created_at,
                        todo.updated_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner not found", {"owner_id": owner_id})
        return self._row_to_todo(row)

    def update_todo(
        self,
        todo_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        is_completed: Optional[bool] = None,
    ) -> Optional[Todo]:
        key = _as_uuid(todo_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE todos
                SET title = COALESCE(%s, title),
                    description = COALESCE(%s, description),
                    is_completed = COALESCE(%s, is_completed),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (title, description, is_completed, key),
            ).fetchone()
        return self._row_to_todo(row) if row else None

    def delete_todo(self, todo_id: str) -> bool:
        key = _as_uuid(todo_id)
        if key is None:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM todos WHERE id = %s RETURNING id", (key,)
            ).fetchone()
        return row is not None
