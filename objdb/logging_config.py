"""Centralized logging configuration for the object database services."""
import logging
import sys
import json
from typing import Any, Dict, Optional
from datetime import datetime, timezone

from .config import settings


TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _level(name: Optional[str]) -> int:
    return getattr(logging, (name or settings.log_level).upper(), logging.INFO)


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, for Loki/ELK.

    Request fields passed through ``extra`` (namespace, action, target,
    duration_ms) land at the top level; engine errors add their details.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )

        if record.exc_info and record.exc_info[0] is not None:
            error = record.exc_info[1]
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(error) if error is not None else None,
                "details": getattr(error, "details", None) or None,
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """Adapter that stamps ``service_name`` on every record it emits."""

    def __init__(self, logger: logging.Logger, service_name: str):
        super().__init__(logger, {"service_name": service_name})
        self.service_name = service_name

    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        kwargs["extra"] = {**kwargs.get("extra", {}), "service_name": self.service_name}
        return msg, kwargs


def setup_logging(service_name: str, level: Optional[str] = None, fmt: Optional[str] = None) -> StructuredLogger:
    """
    Configure the service logger.

    Args:
        service_name: Logger name, e.g. ``legacy``
        level: Overrides ``settings.log_level``
        fmt: Overrides ``settings.log_format`` (``json`` or ``text``)

    Returns:
        Adapter bound to the service name
    """
    log_level = _level(level)
    logger = logging.getLogger(service_name)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if (fmt or settings.log_format).lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)

    return StructuredLogger(logger, service_name)


# ============================================================================
# Request Logging Helpers
# ============================================================================

def _pairs(fields: Dict[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items())


def log_request(logger: logging.Logger, namespace: str, action: str, **fields: Any) -> None:
    """Log an incoming action for a namespace."""
    logger.info(
        f"Request received: namespace={namespace} action={action} {_pairs(fields)}".strip(),
        extra={"namespace": namespace, "action": action, **fields},
    )


def log_response(
    logger: logging.Logger,
    namespace: str,
    action: str,
    ok: bool,
    duration_ms: float,
    **fields: Any,
) -> None:
    """Log the outcome and latency of an action."""
    status = "success" if ok else "failure"
    logger.info(
        f"Response sent: namespace={namespace} action={action} status={status} "
        f"duration_ms={duration_ms:.2f} {_pairs(fields)}".strip(),
        extra={"namespace": namespace, "action": action, "status": status,
               "duration_ms": round(duration_ms, 2), **fields},
    )


def log_error(logger: logging.Logger, namespace: str, error: Exception, **fields: Any) -> None:
    """Log a failed action; engine errors carry their details along."""
    logger.error(
        f"Error occurred: namespace={namespace} error={type(error).__name__} message={error} {_pairs(fields)}".strip(),
        extra={"namespace": namespace, "error": type(error).__name__,
               "details": getattr(error, "details", None) or {}, **fields},
    )
