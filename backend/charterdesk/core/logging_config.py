"""JSON logging for the action link service.

Every record is one JSON object carrying the service name, version and
environment plus an ``event_type``. Records on the ``security.*`` loggers,
or whose ``event_type`` starts with ``security.``, are tagged
``is_security_event`` and also go to a separate security log when file
logging is enabled.

Step tracing for verify/consume lives on its own logger
(``TRACE_LOGGER_NAME``) and is silent unless ``ACTION_LINK_TRACE`` is set.
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

from charterdesk.core.config import settings

TRACE_LOGGER_NAME = "charterdesk.action_links.trace"

SECURITY_LOGGER_PREFIX = "security."


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with service metadata and a default event_type."""

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger"},
            **kwargs,
        )

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.pop("asctime", None)
        log_record["@timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record["service"] = {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
        }

        if record.name == TRACE_LOGGER_NAME:
            log_record.setdefault("event_type", "trace.action_link")
        else:
            log_record.setdefault("event_type", f"log.{record.name}")

        # Source location only where someone will go looking for it
        if record.levelno >= logging.WARNING:
            log_record["source"] = f"{record.pathname}:{record.lineno}"


class SecurityEventFilter(logging.Filter):
    """Tag security records so handlers and SIEM queries can pick them out."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "is_security_event", False):
            event_type = str(getattr(record, "event_type", ""))
            record.is_security_event = record.name.startswith(
                SECURITY_LOGGER_PREFIX
            ) or event_type.startswith(SECURITY_LOGGER_PREFIX)
        return True


class SecurityOnlyFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "is_security_event", False)


def _rotating_handler(path: Path, backup_days: int) -> logging.Handler:
    return logging.handlers.TimedRotatingFileHandler(
        path, when="midnight", backupCount=backup_days, encoding="utf-8"
    )


def configure_logging(level: int | str | None = None) -> None:
    """Install JSON handlers on the root logger. Call once at startup."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level or settings.LOG_LEVEL.upper())
    root_logger.handlers.clear()

    formatter = ServiceJsonFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_dir = Path(settings.LOG_DIR)
    if log_dir.is_dir():
        handlers.append(_rotating_handler(log_dir / "application.log", 30))
        security_handler = _rotating_handler(log_dir / "security.log", 365)
        security_handler.addFilter(SecurityOnlyFilter())
        handlers.append(security_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        # Tagging must run before SecurityOnlyFilter looks at the record
        handler.filters.insert(0, SecurityEventFilter())
        root_logger.addHandler(handler)

    # Route uvicorn through the root handlers instead of its own
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True

    logging.getLogger(TRACE_LOGGER_NAME).setLevel(
        logging.DEBUG if settings.ACTION_LINK_TRACE else logging.WARNING
    )

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "event_type": "system.startup.logging_configured",
            "file_logging": log_dir.is_dir(),
            "action_link_trace": settings.ACTION_LINK_TRACE,
        },
    )


def format_security_event(
    event_type: str,
    severity: str,
    description: str,
    **context: Any,
) -> dict[str, Any]:
    """Build the ``extra`` dict for a security log record.

    Context fields that are None are dropped, so callers can pass
    ``tenant_id=link.tenant_id if link else None`` without filtering.

    Usage:
        security_logger.warning(
            "Action link verify rejected",
            extra=format_security_event(
                event_type="security.action_link.verify_rejected",
                severity="warning",
                description="email_mismatch",
                ip_address=client_ip,
                resource_id=link.id,
            ),
        )
    """
    event = {
        "event_type": event_type,
        "severity": severity,
        "description": description,
        "is_security_event": True,
    }
    event.update({key: value for key, value in context.items() if value is not None})
    return event
