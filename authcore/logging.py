from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = ("password", "secret", "token", "authorization", "email", "code")
# Structural fields that merely mention a PII word and must stay readable
_PII_SAFE_KEYS = frozenset(
    {"error_code", "status_code", "email_hash", "email_configured", "token_type", "token_version"}
)
_MASK = "***"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def hash_email(email: str) -> str:
    """Stable, non-reversible email fingerprint for log correlation."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def _mask_value(key: str, value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and "email" in key and "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:2]}{_MASK}@{domain}"
    if isinstance(value, (list, tuple)):
        return [_mask_value(key, item) for item in value]
    return _MASK


def _is_sensitive(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _PII_SAFE_KEYS:
        return False
    return any(pii in lower_key for pii in _PII_KEYS)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, codes and addresses before rendering.

    Secrets are replaced outright; email addresses keep the first two
    characters of the local part and the domain.
    """
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _is_sensitive(key):
            event_dict[key] = _mask_value(key.lower(), value)
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _mask_value(k.lower(), v) if _is_sensitive(k) else v for k, v in value.items()
            }
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the process.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: render JSON lines; otherwise console output
        development_mode: force colourised console output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

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
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
