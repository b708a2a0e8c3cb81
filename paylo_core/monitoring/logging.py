"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Credential-bearing fields are redacted
before rendering so tokens never reach a log sink.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from ..config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {"access_token", "refresh_token", "authorization", "password", "token", "vault_secret"}
)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a secret for display, keeping a few characters at each end.

    Args:
        value: Secret to mask
        visible_chars: Characters kept at each end

    Returns:
        str: Masked value
    """
    if not value or len(value) <= visible_chars * 2:
        return "*" * len(value or "")
    hidden = "*" * (len(value) - visible_chars * 2)
    return f"{value[:visible_chars]}{hidden}{value[-visible_chars:]}"


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask values of known credential fields in a log event."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS and isinstance(event_dict[key], str):
            event_dict[key] = mask_sensitive(event_dict[key])
    return event_dict


def _app_context_processor(settings: Settings) -> Any:
    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs on stdout
    - Context variables merged into every event
    - Secret redaction
    - Application context fields

    Args:
        settings: Settings to read level and app context from
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_secrets,
            _app_context_processor(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )


def get_logger(name: str) -> Any:
    """
    Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        Any: Structured logger
    """
    return structlog.get_logger(name)
