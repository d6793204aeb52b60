from __future__ import annotations

from typing import Optional, Protocol

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.service.cache import (
    CacheAside,
    todo_item_key,
    todo_list_key,
    todo_user_pattern,
)
from tasktrack.service.errors import ForbiddenError, NotFoundError, ValidationError
from tasktrack.service.store_call import call_store
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import Todo, TodoPage, TodoQuery

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 255


class TodoStore(Protocol):
    def list_todos(self, owner_id: str, query: TodoQuery) -> TodoPage: ...

    def get_todo(self, todo_id: str) -> Optional[Todo]: ...

    def create_todo(self, owner_id: str, title: str, description: str) -> Todo: ...

    def update_todo(
        self,
        todo_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        is_completed: Optional[bool] = None,
    ) -> Optional[Todo]: ...

    def delete_todo(self, todo_id: str) -> bool: ...


class TodoService:
    """Per-user todo CRUD with read-through caching.

    Every write drops all cached lists and items of the owner, so readers
    never see an entry older than the last write they could observe.
    """

    def __init__(self, store: TodoStore, cache: CacheAside, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    @staticmethod
    def _clean_title(title: Optional[str]) -> str:
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValidationError("title is required", detail={"field": "title"})
        if len(cleaned) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"title must be at most {MAX_TITLE_LENGTH} characters",
                detail={"field": "title"},
            )
        return cleaned

    async def _invalidate(self, owner_id: str) -> None:
        await self.cache.delete_by_prefix(todo_user_pattern(owner_id))

    async def _load_owned(self, owner_id: str, todo_id: str) -> Todo:
        todo = await call_store("get_todo", self.store.get_todo, todo_id)
        if todo is None:
            raise NotFoundError("todo not found", detail={"todo_id": todo_id})
        if todo.owner_id != owner_id:
            logger.warning("todo_access_denied", todo_id=todo_id, user_id=owner_id)
            raise ForbiddenError("todo belongs to another user")
        return todo

    async def list_todos(self, owner_id: str, query: TodoQuery) -> TodoPage:
        normalized = query.normalized()

        async def load() -> TodoPage:
            return await call_store("list_todos", self.store.list_todos, owner_id, normalized)

        page = await self.cache.get_or_load(
            todo_list_key(owner_id, normalized.signature()),
            self.settings.todo_cache_ttl_seconds,
            load,
            encode=TodoPage.to_dict,
            decode=TodoPage.from_dict,
        )
        return page

    async def get_todo(self, owner_id: str, todo_id: str) -> Todo:
        key = todo_item_key(owner_id, todo_id)
        cached = await self.cache.get_cached(key, Todo.from_dict)
        if cached is not None:
            return cached
        todo = await self._load_owned(owner_id, todo_id)
        await self.cache.set_cached(key, todo, self.settings.todo_cache_ttl_seconds, Todo.to_dict)
        return todo

    async def create_todo(self, owner_id: str, title: str, description: Optional[str] = None) -> Todo:
        title = self._clean_title(title)
        try:
            todo = await call_store(
                "create_todo", self.store.create_todo, owner_id, title, description or ""
            )
        except ConstraintViolation as exc:
            raise NotFoundError("owner not found", detail=exc.detail) from exc
        await self._invalidate(owner_id)
        logger.info("todo_created", todo_id=todo.id, user_id=owner_id)
        return todo

    async def update_todo(
        self,
        owner_id: str,
        todo_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        is_completed: Optional[bool] = None,
    ) -> Todo:
        if title is not None:
            title = self._clean_title(title)
        await self._load_owned(owner_id, todo_id)
        updated = await call_store(
            "update_todo",
            self.store.update_todo,
            todo_id,
            title=title,
            description=description,
            is_completed=is_completed,
        )
        if updated is None:
            raise NotFoundError("todo not found", detail={"todo_id": todo_id})
        await self._invalidate(owner_id)
        logger.info("todo_updated", todo_id=todo_id, user_id=owner_id)
        return updated

    async def delete_todo(self, owner_id: str, todo_id: str) -> None:
        await self._load_owned(owner_id, todo_id)
        deleted = await call_store("delete_todo", self.store.delete_todo, todo_id)
        if not deleted:
            raise NotFoundError("todo not found", detail={"todo_id": todo_id})
        await self._invalidate(owner_id)
        logger.info("todo_deleted", todo_id=todo_id, user_id=owner_id)
