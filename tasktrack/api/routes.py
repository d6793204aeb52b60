from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from tasktrack.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    BackupLoginRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
    TodoCreateRequest,
    TodoPageResponse,
    TodoResponse,
    TodoUpdateRequest,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UpdateUserRequest,
    UserResponse,
)
from tasktrack.logging import get_logger
from tasktrack.service.auth import AuthContext, AuthResult
from tasktrack.service.runtime import get_runtime
from tasktrack.storage.models import DEFAULT_PAGE_SIZE, TodoQuery

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
        ),
    )


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _require_self(principal: AuthContext, user_id: str) -> None:
    if principal.user_id != user_id:
        logger.warning("cross_user_access_denied", user_id=principal.user_id, target=user_id)
        raise _http_error("forbidden", "cannot act on another user", status_code=403)


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    result = await runtime.auth.register(body.email, body.name, body.password)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password, plus a TOTP code once 2FA is on.

    Raises:
        401: invalid credentials, missing or wrong two-factor code
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, body.totp_code)
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh token. The presented token is spent even if the caller loses the reply."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
        ),
    )


@router.post("/auth/login/backup", response_model=Envelope, tags=["auth"])
async def login_with_backup_code(body: BackupLoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login_with_backup_code(
        body.email, body.password, body.backup_code
    )
    return _auth_envelope(result)


# users
@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    _require_self(principal, user_id)
    runtime = get_runtime()
    user = await runtime.auth.update_user(user_id, body.email)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/{user_id}/2fa/enable", response_model=Envelope, tags=["two-factor"])
async def enable_two_factor(
    body: TwoFactorEnableRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    _require_self(principal, user_id)
    runtime = get_runtime()
    setup = await runtime.auth.enable_two_factor(user_id, body.password)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            qr_code=setup.qr_code,
            message="Scan the QR code and verify a code to finish enabling 2FA.",
        ),
    )


@router.post("/users/{user_id}/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def verify_two_factor(
    body: TwoFactorCodeRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    _require_self(principal, user_id)
    runtime = get_runtime()
    await runtime.auth.verify_two_factor(user_id, body.code)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(success=True, message="2FA verified and enabled."),
    )


@router.post("/users/{user_id}/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    _require_self(principal, user_id)
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(user_id, body.password, body.code)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(success=True, message="2FA disabled."),
    )


@router.post("/users/{user_id}/2fa/backup-codes", response_model=Envelope, tags=["two-factor"])
async def regenerate_backup_codes(
    body: TwoFactorCodeRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    """Replace all backup codes. The plaintext codes are only ever returned here."""
    _require_self(principal, user_id)
    runtime = get_runtime()
    codes = await runtime.auth.regenerate_backup_codes(user_id, body.code)
    return Envelope(
        status="ok",
        data=BackupCodesResponse(
            backup_codes=codes, message="Backup codes generated successfully"
        ),
    )


# todos
@router.get("/todos", response_model=Envelope, tags=["todos"])
async def list_todos(
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    search: Optional[str] = Query(None, max_length=255),
    is_completed: Optional[bool] = Query(None),
    sort_by: str = Query("created_at", max_length=32),
    sort_order: str = Query("desc", max_length=8),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    query = TodoQuery(
        page=page,
        page_size=page_size,
        search=search,
        is_completed=is_completed,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    result = await runtime.todos.list_todos(principal.user_id, query)
    return Envelope(status="ok", data=TodoPageResponse.from_page(result))


@router.post("/todos", response_model=Envelope, status_code=201, tags=["todos"])
async def create_todo(body: TodoCreateRequest, principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    todo = await runtime.todos.create_todo(principal.user_id, body.title, body.description)
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.get("/todos/{todo_id}", response_model=Envelope, tags=["todos"])
async def get_todo(
    todo_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    todo = await runtime.todos.get_todo(principal.user_id, todo_id)
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.patch("/todos/{todo_id}", response_model=Envelope, tags=["todos"])
async def update_todo(
    body: TodoUpdateRequest,
    todo_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    todo = await runtime.todos.update_todo(
        principal.user_id,
        todo_id,
        title=body.title,
        description=body.description,
        is_completed=body.is_completed,
    )
    return Envelope(status="ok", data=TodoResponse.from_todo(todo))


@router.delete("/todos/{todo_id}", response_model=Envelope, tags=["todos"])
async def delete_todo(
    todo_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.todos.delete_todo(principal.user_id, todo_id)
    return Envelope(status="ok", data={"deleted": True, "id": todo_id})
