from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import secrets
import threading
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from tasktrack.logging import get_logger
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Todo, TodoPage, TodoQuery, User, utcnow


class MemoryStore:
    """In-process user and todo store persisted to a JSON state file.

    Used for tests and single-node development. TOTP secrets are encrypted at
    rest with Fernet so the state file never holds them in the clear.
    """

    def __init__(self, fs_root: str = "/tmp/tasktrack", *, secret_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.todos: Dict[str, Todo] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = self._build_cipher(secret_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material
        if not material:
            key_path = self.fs_root / ".store_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = secrets.token_urlsafe(64)
                key_path.write_text(material)
                os.chmod(key_path, 0o600)
        return Fernet(self._derive_cipher_key(material))

    def _encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            self.logger.warning("two_factor_secret_decrypt_failed")
            return None

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply a change and persist it; a failed persist restores the previous state.

        Mutators swap in new records rather than editing stored ones, so a
        shallow snapshot of both maps is enough to roll back.
        """
        with self._data_lock:
            users, todos = dict(self.users), dict(self.todos)
            try:
                yield
                self._persist_state()
            except Exception:
                self.users, self.todos = users, todos
                raise

    # users
    def create_user(self, email: str, name: str, password_hash: str) -> User:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email=email, name=name, password_hash=password_hash)
            with self._mutation():
                self.users[user.id] = user
            return copy.deepcopy(user)

    def _find_by_email(self, email: str) -> Optional[User]:
        wanted = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == wanted), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return copy.deepcopy(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def _replace_user(self, user: User, **changes) -> User:
        updated = replace(user, updated_at=utcnow(), **changes)
        with self._mutation():
            self.users[user.id] = updated
        return copy.deepcopy(updated)

    def update_email(self, user_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            other = self._find_by_email(email)
            if other and other.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            return self._replace_user(user, email=email)

    def enable_two_factor(self, user_id: str, secret: str) -> Optional[User]:
        """Store a pending secret and drop backup codes; None if missing or already enabled."""
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.two_factor_enabled:
                return None
            return self._replace_user(
                user, two_factor_secret=secret, two_factor_enabled=False, backup_codes=[]
            )

    def verify_two_factor(self, user_id: str, secret: str) -> Optional[User]:
        """Turn 2FA on only while ``secret`` is still the stored one."""
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.two_factor_secret != secret:
                return None
            return self._replace_user(user, two_factor_enabled=True)

    def disable_two_factor(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            return self._replace_user(
                user, two_factor_enabled=False, two_factor_secret=None, backup_codes=[]
            )

    def set_backup_codes(self, user_id: str, digests: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or not user.two_factor_enabled:
                return None
            return self._replace_user(user, backup_codes=list(digests))

    def consume_backup_code(self, user_id: str, digest: str) -> bool:
        """Remove ``digest`` from the user's backup codes if it is still present."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or digest not in user.backup_codes:
                return False
            self._replace_user(
                user, backup_codes=[code for code in user.backup_codes if code != digest]
            )
            return True

    # todos
    def list_todos(self, owner_id: str, query: TodoQuery) -> TodoPage:
        q = query.normalized()
        with self._data_lock:
            items = [t for t in self.todos.values() if t.owner_id == owner_id]
        if q.search:
            needle = q.search.lower()
            items = [
                t
                for t in items
                if needle in t.title.lower() or needle in t.description.lower()
            ]
        if q.is_completed is not None:
            items = [t for t in items if t.is_completed == q.is_completed]

        def sort_key(todo: Todo):
            value = getattr(todo, q.sort_by)
            return value.lower() if isinstance(value, str) else value

        items.sort(key=sort_key, reverse=q.sort_order == "desc")
        window = items[q.offset : q.offset + q.page_size]
        return TodoPage(
            todos=[copy.deepcopy(t) for t in window],
            total=len(items),
            page=q.page,
            page_size=q.page_size,
        )

    def get_todo(self, todo_id: str) -> Optional[Todo]:
        with self._data_lock:
            todo = self.todos.get(todo_id)
            return copy.deepcopy(todo) if todo else None

    def create_todo(self, owner_id: str, title: str, description: str) -> Todo:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("owner not found", {"owner_id": owner_id})
            todo = Todo.new(owner_id=owner_id, title=title, description=description)
            with self._mutation():
                self.todos[todo.id] = todo
            return copy.deepcopy(todo)

    def update_todo(
        self,
        todo_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        is_completed: Optional[bool] = None,
    ) -> Optional[Todo]:
        with self._data_lock:
            todo = self.todos.get(todo_id)
            if not todo:
                return None
            changes = {
                name: value
                for name, value in (
                    ("title", title),
                    ("description", description),
                    ("is_completed", is_completed),
                )
                if value is not None
            }
            updated = replace(todo, updated_at=utcnow(), **changes)
            with self._mutation():
                self.todos[todo_id] = updated
            return copy.deepcopy(updated)

    def delete_todo(self, todo_id: str) -> bool:
        with self._data_lock:
            if todo_id not in self.todos:
                return False
            with self._mutation():
                del self.todos[todo_id]
            return True

    # persistence
    def _serialize_user(self, user: User) -> dict:
        data = user.to_dict()
        data["two_factor_secret"] = self._encrypt(user.two_factor_secret)
        return data

    def _deserialize_user(self, data: dict) -> User:
        user = User.from_dict(data)
        user.two_factor_secret = self._decrypt(user.two_factor_secret)
        return user

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "todos": [t.to_dict() for t in self.todos.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.todos = {t["id"]: Todo.from_dict(t) for t in data.get("todos", [])}
        return True
