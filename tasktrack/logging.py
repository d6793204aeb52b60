from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Dropped outright: credentials, token material and 2FA codes
_CREDENTIAL_KEYS = frozenset(
    {
        "authorization",
        "code",
        "totp_code",
        "backup_code",
        "backup_codes",
        "otpauth_uri",
        "qr_code",
    }
)
_CREDENTIAL_SUFFIXES = ("password", "password_hash", "secret", "token")

_CACHE_KEY_FIELDS = frozenset({"key", "pattern"})

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _is_credential_key(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _CREDENTIAL_KEYS:
        return True
    return lower_key.endswith(_CREDENTIAL_SUFFIXES)


def mask_email(value: str) -> str:
    """``alice@example.com`` becomes ``al***@example.com``."""
    local, sep, domain = value.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:2]}***@{domain}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip credentials and mask email addresses before an event reaches a sink.

    Error codes such as ``error_code`` or ``status_code`` are left alone; only
    the bare ``code`` key carries a user-supplied 2FA code.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        if _is_credential_key(key):
            event_dict[key] = REDACTED
        elif "email" in key.lower() and isinstance(value, str):
            event_dict[key] = mask_email(value)
        elif key in _CACHE_KEY_FIELDS and isinstance(value, str) and "@" in value:
            # user:email:<address> lookups
            prefix, _, address = value.rpartition(":")
            event_dict[key] = f"{prefix}:{mask_email(address)}"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and the output renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger bound to ``name`` so every event records the module it came from."""
    return structlog.get_logger().bind(logger=name)
