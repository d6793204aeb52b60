from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.service.backup_codes import BackupCodeManager
from tasktrack.service.cache import CacheAside, user_email_key
from tasktrack.service.errors import (
    AuthenticationFailure,
    BackupCodeInvalid,
    ConflictError,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidTwoFactorCode,
    NoSuchUserFound,
    TwoFactorAlreadyEnabled,
    TwoFactorNotEnabled,
    TwoFactorRequired,
    UserAlreadyExists,
    ValidationError,
)
from tasktrack.service.passwords import PasswordHasher
from tasktrack.service.store_call import call_store
from tasktrack.service.tokens import TokenPair, TokenService
from tasktrack.service.totp import TOTPEngine
from tasktrack.storage.errors import ConstraintViolation
from tasktrack.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, email: str, name: str, password_hash: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_email(self, user_id: str, email: str) -> Optional[User]: ...

    def enable_two_factor(self, user_id: str, secret: str) -> Optional[User]: ...

    def verify_two_factor(self, user_id: str, secret: str) -> Optional[User]: ...

    def disable_two_factor(self, user_id: str) -> Optional[User]: ...

    def set_backup_codes(self, user_id: str, digests: List[str]) -> Optional[User]: ...

    def consume_backup_code(self, user_id: str, digest: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_code: str


class AuthService:
    """Registration, login, token rotation, and two-factor lifecycle."""

    def __init__(
        self,
        store: UserStore,
        cache: CacheAside,
        tokens: TokenService,
        settings: Settings,
        *,
        passwords: Optional[PasswordHasher] = None,
        totp: Optional[TOTPEngine] = None,
        backup_codes: Optional[BackupCodeManager] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.settings = settings
        self.passwords = passwords or PasswordHasher()
        self.totp = totp or TOTPEngine(settings.totp_issuer)
        self.backup_codes = backup_codes or BackupCodeManager(count=settings.backup_code_count)

    # user lookups
    async def _find_user_by_email(self, email: str) -> Optional[User]:
        async def load() -> Optional[User]:
            return await call_store("get_user_by_email", self.store.get_user_by_email, email)

        return await self.cache.get_or_load(
            user_email_key(email),
            self.settings.user_cache_ttl_seconds,
            load,
            encode=User.to_cache_dict,
            decode=User.from_dict,
        )

    async def _require_user(self, user_id: str) -> User:
        user = await call_store("get_user", self.store.get_user, user_id)
        if user is None:
            raise NoSuchUserFound("user not found", detail={"user_id": user_id})
        return user

    async def _invalidate_user(self, *emails: str) -> None:
        for email in {e.lower() for e in emails if e}:
            await self.cache.delete(user_email_key(email))

    async def _write_user(
        self, operation: str, func: Callable[..., Optional[User]], *args: Any
    ) -> Optional[User]:
        """Run one targeted user write and drop the cached lookup for the result."""
        saved = await call_store(operation, func, *args)
        if saved is not None:
            await self._invalidate_user(saved.email)
        return saved

    async def _check_password(self, user: User, password: str) -> None:
        if not await asyncio.to_thread(self.passwords.verify, password, user.password_hash):
            raise InvalidCredentials("invalid email or password")

    def _validate_password(self, password: str) -> None:
        if len(password or "") < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )

    @staticmethod
    def _validate_email(email: str) -> str:
        cleaned = (email or "").strip()
        local, _, domain = cleaned.partition("@")
        if not local or not domain or "." not in domain:
            raise ValidationError("invalid email address", detail={"field": "email"})
        return cleaned

    # use cases
    async def register(self, email: str, name: str, password: str) -> AuthResult:
        email = self._validate_email(email)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        self._validate_password(password)
        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            user = await call_store(
                "create_user", self.store.create_user, email, name, password_hash
            )
        except ConstraintViolation as exc:
            raise UserAlreadyExists("user with this email already exists") from exc
        await self._invalidate_user(user.email)
        tokens = await self.tokens.issue_pair(user.id)
        logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def login(
        self, email: str, password: str, totp_code: Optional[str] = None
    ) -> AuthResult:
        user = await self._find_user_by_email((email or "").strip())
        if user is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentials("invalid email or password")
        await self._check_password(user, password)
        # the cached record carries no two-factor state
        user = await call_store("get_user", self.store.get_user, user.id)
        if user is None:
            raise InvalidCredentials("invalid email or password")
        if user.two_factor_enabled:
            if not totp_code:
                raise TwoFactorRequired("two-factor code required")
            if not self.totp.verify_code(user.two_factor_secret or "", totp_code):
                logger.info("login_failed", user_id=user.id, reason="invalid_totp")
                raise InvalidTwoFactorCode("invalid two-factor code")
        tokens = await self.tokens.issue_pair(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        user_id = await self.tokens.redeem_refresh(refresh_token)
        user = await call_store("get_user", self.store.get_user, user_id)
        if user is None:
            logger.warning("refresh_for_missing_user", user_id=user_id)
            raise InvalidRefreshToken("invalid refresh token")
        return await self.tokens.issue_pair(user.id)

    async def update_user(self, user_id: str, email: str) -> User:
        email = self._validate_email(email)
        user = await self._require_user(user_id)
        try:
            saved = await call_store("update_email", self.store.update_email, user_id, email)
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        if saved is None:
            raise NoSuchUserFound("user not found", detail={"user_id": user_id})
        await self._invalidate_user(saved.email, user.email)
        logger.info("user_updated", user_id=user_id)
        return saved

    async def enable_two_factor(self, user_id: str, password: str) -> TwoFactorSetup:
        """Store a fresh secret in the pending state; ``verify_two_factor`` turns it on."""
        user = await self._require_user(user_id)
        await self._check_password(user, password)
        if user.two_factor_enabled:
            raise TwoFactorAlreadyEnabled("two-factor authentication is already enabled")
        secret = self.totp.generate_secret()
        uri = self.totp.provisioning_uri(secret, user.email, self.settings.totp_issuer)
        qr_code = await asyncio.to_thread(self.totp.render_qr, uri)
        saved = await self._write_user(
            "enable_two_factor", self.store.enable_two_factor, user_id, secret
        )
        if saved is None:
            # deleted, or a concurrent verify turned 2FA on first
            await self._require_user(user_id)
            raise TwoFactorAlreadyEnabled("two-factor authentication is already enabled")
        logger.info("two_factor_pending", user_id=user_id)
        return TwoFactorSetup(secret=secret, otpauth_uri=uri, qr_code=qr_code)

    async def verify_two_factor(self, user_id: str, code: str) -> None:
        user = await self._require_user(user_id)
        if not user.two_factor_secret:
            raise TwoFactorNotEnabled("two-factor authentication has not been set up")
        if not self.totp.verify_code(user.two_factor_secret, code):
            raise InvalidTwoFactorCode("invalid two-factor code")
        if not user.two_factor_pending:
            return
        saved = await self._write_user(
            "verify_two_factor", self.store.verify_two_factor, user_id, user.two_factor_secret
        )
        if saved is None:
            # the secret was replaced after this code was checked
            raise InvalidTwoFactorCode("invalid two-factor code")
        logger.info("two_factor_enabled", user_id=user_id)

    async def disable_two_factor(self, user_id: str, password: str, code: str) -> None:
        user = await self._require_user(user_id)
        await self._check_password(user, password)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise TwoFactorNotEnabled("two-factor authentication is not enabled")
        if not self.totp.verify_code(user.two_factor_secret, code):
            raise InvalidTwoFactorCode("invalid two-factor code")
        saved = await self._write_user(
            "disable_two_factor", self.store.disable_two_factor, user_id
        )
        if saved is None:
            raise NoSuchUserFound("user not found", detail={"user_id": user_id})
        logger.info("two_factor_disabled", user_id=user_id)

    async def regenerate_backup_codes(self, user_id: str, code: str) -> List[str]:
        """Replace the whole backup-code set; returns the new codes formatted for display."""
        user = await self._require_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise TwoFactorNotEnabled("two-factor authentication is not enabled")
        if not self.totp.verify_code(user.two_factor_secret, code):
            raise InvalidTwoFactorCode("invalid two-factor code")
        plaintext, hashed = self.backup_codes.generate()
        saved = await self._write_user(
            "set_backup_codes", self.store.set_backup_codes, user_id, hashed
        )
        if saved is None:
            raise TwoFactorNotEnabled("two-factor authentication is not enabled")
        logger.info("backup_codes_regenerated", user_id=user_id, count=len(hashed))
        return [self.backup_codes.format_for_display(c) for c in plaintext]

    async def login_with_backup_code(
        self, email: str, password: str, backup_code: str
    ) -> AuthResult:
        email = (email or "").strip()
        # the cached record carries no backup codes
        user = await call_store("get_user_by_email", self.store.get_user_by_email, email)
        if user is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            raise InvalidCredentials("invalid email or password")
        await self._check_password(user, password)
        if not user.two_factor_enabled:
            raise TwoFactorNotEnabled("two-factor authentication is not enabled")
        index = self.backup_codes.verify_and_locate(backup_code, user.backup_codes)
        if index is None:
            logger.info("backup_login_failed", user_id=user.id, reason="no_match")
            raise BackupCodeInvalid("invalid backup code")
        consumed = await call_store(
            "consume_backup_code",
            self.store.consume_backup_code,
            user.id,
            user.backup_codes[index],
        )
        if not consumed:
            # lost a race with a concurrent use of the same code
            logger.info("backup_login_failed", user_id=user.id, reason="already_consumed")
            raise BackupCodeInvalid("invalid backup code")
        tokens = await self.tokens.issue_pair(user.id)
        logger.info("backup_login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationFailure("missing bearer token")
        return AuthContext(user_id=self.tokens.authenticate_access(token))

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None
