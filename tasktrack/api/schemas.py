from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tasktrack.logging import get_correlation_id
from tasktrack.storage.models import Todo, TodoPage, User

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "invalid_refresh_token",
    "two_factor_required",
    "invalid_two_factor_code",
    "invalid_backup_code",
    "two_factor_not_enabled",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)} | {
        chr(c) for c in range(0x2066, 0x206A)
    }
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    # minimum length is enforced by the service against settings
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# requests
class RegisterRequest(BaseModel):
    email: str
    name: str = Field(..., min_length=1, max_length=255)
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value).strip()

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    totp_code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class BackupLoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    backup_code: str = Field(..., min_length=1, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_backup_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class UpdateUserRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorEnableRequest(BaseModel):
    password: str = Field(..., max_length=128)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., max_length=10)


class TwoFactorDisableRequest(BaseModel):
    password: str = Field(..., max_length=128)
    code: str = Field(..., max_length=10, description="Current TOTP code to verify identity")


class TodoCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10000)


class TodoUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=10000)
    is_completed: Optional[bool] = None


# responses
class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    two_factor_enabled: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"


class AuthResponse(TokenResponse):
    user: UserResponse


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str = Field(..., description="PNG QR code as a data URL")
    message: str


class TwoFactorStatusResponse(BaseModel):
    success: bool
    message: str


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: str


class TodoResponse(BaseModel):
    id: str
    title: str
    description: str
    is_completed: bool
    owner_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_todo(cls, todo: Todo) -> "TodoResponse":
        return cls(
            id=todo.id,
            title=todo.title,
            description=todo.description,
            is_completed=todo.is_completed,
            owner_id=todo.owner_id,
            created_at=todo.created_at,
            updated_at=todo.updated_at,
        )


class TodoPageResponse(BaseModel):
    todos: List[TodoResponse]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def from_page(cls, page: TodoPage) -> "TodoPageResponse":
        return cls(
            todos=[TodoResponse.from_todo(t) for t in page.todos],
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=page.total_pages,
        )
