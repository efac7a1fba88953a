"""
Pod Healer - Structured Logging
===============================

One JSON object per line on stdout. Records emitted while a scan cycle
runs carry that cycle's ``scan_id``, so a remediation can be traced from
the decision that caused it to the outcome the store recorded.

Usage:
    from podhealer.utils.logging import get_logger, setup_logging

    setup_logging(service_name="pod-healer", log_level="INFO")
    logger = get_logger(__name__)

    logger.info("Pod deleted", extra={"namespace": "shop", "pod": "web-1"})
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

# Bound by the orchestrator for the duration of a cycle
scan_id_var: ContextVar[Optional[str]] = ContextVar("scan_id", default=None)

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

# Chatty client libraries; the kubernetes client logs each request via urllib3
_QUIET_LOGGERS = ("urllib3", "kubernetes", "httpx", "httpcore")


class StructuredFormatter(logging.Formatter):
    """JSON formatter stamping service name, scan id and ``extra`` fields."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        scan_id = getattr(record, "scan_id", None) or scan_id_var.get()
        if scan_id:
            entry["scan_id"] = scan_id

        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_") and key not in entry
        )

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """Adds the current scan id to ``extra`` unless the caller set one."""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(kwargs.get("extra") or {})
        scan_id = scan_id_var.get()
        if scan_id:
            extra.setdefault("scan_id", scan_id)
        kwargs["extra"] = extra
        return msg, kwargs


_adapters: dict[str, ContextualLogger] = {}


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """
    Route all logging to stdout. Call once at startup.

    Args:
        service_name: Name stamped on every record
        log_level: Minimum level name, e.g. INFO or DEBUG
        json_output: JSON lines if True, plain text for local runs
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s {service_name} %(levelname)-8s %(name)s: %(message)s"
        ))

    logging.basicConfig(level=log_level.upper(), handlers=[handler], force=True)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> ContextualLogger:
    """Scan-id aware logger for ``name``, created once per name."""
    adapter = _adapters.get(name)
    if adapter is None:
        adapter = _adapters[name] = ContextualLogger(logging.getLogger(name), {})
    return adapter


def set_scan_id(scan_id: Optional[str]) -> None:
    scan_id_var.set(scan_id)


def get_scan_id() -> Optional[str]:
    return scan_id_var.get()
