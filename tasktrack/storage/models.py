from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    two_factor_enabled: bool = False
    # set while enabled or while a verification is pending
    two_factor_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)

    @classmethod
    def new(cls, email: str, name: str, password_hash: str) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    @property
    def two_factor_pending(self) -> bool:
        return bool(self.two_factor_secret) and not self.two_factor_enabled

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "password_hash": self.password_hash,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "two_factor_enabled": self.two_factor_enabled,
            "two_factor_secret": self.two_factor_secret,
            "backup_codes": list(self.backup_codes),
        }

    def to_cache_dict(self) -> Dict[str, Any]:
        """Lookup record for the user cache; two-factor state is always read from the store."""
        data = self.to_dict()
        for key in ("two_factor_enabled", "two_factor_secret", "backup_codes"):
            data.pop(key)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            name=data["name"],
            password_hash=data["password_hash"],
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=data.get("two_factor_secret"),
            backup_codes=list(data.get("backup_codes") or []),
        )


@dataclass
class Todo:
    id: str
    title: str
    description: str
    owner_id: str
    is_completed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, owner_id: str, title: str, description: str) -> "Todo":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "owner_id": self.owner_id,
            "is_completed": self.is_completed,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Todo":
        return cls(
            id=str(data["id"]),
            title=data["title"],
            description=data.get("description") or "",
            owner_id=str(data["owner_id"]),
            is_completed=bool(data.get("is_completed", False)),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
        )


# Accepted sort keys mapped to column names; anything else sorts by created_at
SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "title": "title",
    "completed": "is_completed",
    "is_completed": "is_completed",
}
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class TodoQuery:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    search: Optional[str] = None
    is_completed: Optional[bool] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def normalized(self) -> "TodoQuery":
        """Clamp paging and map sort options onto the accepted set."""
        search = (self.search or "").strip() or None
        return TodoQuery(
            page=max(1, int(self.page or 1)),
            page_size=min(MAX_PAGE_SIZE, max(1, int(self.page_size or DEFAULT_PAGE_SIZE))),
            search=search,
            is_completed=self.is_completed,
            sort_by=SORT_COLUMNS.get((self.sort_by or "").lower(), "created_at"),
            sort_order="asc" if (self.sort_order or "").lower() == "asc" else "desc",
        )

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def signature(self) -> str:
        q = self.normalized()
        completed = "" if q.is_completed is None else str(q.is_completed).lower()
        return (
            f"page={q.page};page_size={q.page_size};search={q.search or ''};"
            f"is_completed={completed};sort_by={q.sort_by};sort_order={q.sort_order}"
        )


@dataclass
class TodoPage:
    todos: List[Todo]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "todos": [todo.to_dict() for todo in self.todos],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TodoPage":
        return cls(
            todos=[Todo.from_dict(item) for item in data.get("todos", [])],
            total=int(data["total"]),
            page=int(data["page"]),
            page_size=int(data["page_size"]),
        )
