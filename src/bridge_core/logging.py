from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Mapping
from typing import Any, TextIO

from bridge_core.shared import redact_secrets

_SECRET_MARKERS = ("authorization", "token", "key", "password", "secret", "sk-")
_LEVEL_NAMES = ("debug", "info", "warning", "error", "critical")

# Every record leaving a bridge logger carries these attributes.
STRUCTURED_LOG_FIELDS: dict[str, Any] = {
    "request_id": "",
    "sandbox_id": "",
    "provider": "",
    "component": "",
    "operation": "",
    "result": "",
    "duration_ms": 0,
    "error_class": "",
}

_LINE_FORMAT = "%(asctime)s %(levelname)s %(name)s: " + " ".join(
    f"{field}=%({field})s" for field in STRUCTURED_LOG_FIELDS
) + " %(message)s"


def _looks_sensitive(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


class StructuredLogDefaultsFilter(logging.Filter):
    """Backfills missing structured fields and scrubs credentials from the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        missing = {key: value for key, value in STRUCTURED_LOG_FIELDS.items() if not hasattr(record, key)}
        record.__dict__.update(missing)
        try:
            rendered = record.getMessage()
        except Exception:
            return True
        if _looks_sensitive(rendered):
            record.msg, record.args = redact_secrets(rendered), ()
        return True


def log_extra(component: str, operation: str, **fields: Any) -> dict[str, Any]:
    return {**STRUCTURED_LOG_FIELDS, "component": component, "operation": operation, **fields}


def _level_number(name: str) -> int:
    return logging.getLevelName(name.upper()) if name in _LEVEL_NAMES else logging.INFO


def configure_structured_logger(logger: logging.Logger, *, level: str, stream: TextIO | None = None) -> None:
    """Route ``logger`` to a single stderr handler using the key=value line format."""
    handler = logging.StreamHandler(stream or sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(_LINE_FORMAT))
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(_level_number(normalize_log_level(level)))
    logger.propagate = False


def normalize_log_level(value: Any) -> str:
    candidate = str(value or "").strip().lower()
    candidate = {"warn": "warning", "fatal": "critical"}.get(candidate, candidate)
    return candidate if candidate in _LEVEL_NAMES else "info"


def configure_domain_log_levels(
    *,
    domains: Mapping[str, Any] | None,
    logger_prefix: str,
    normalize_level: Callable[[Any], str] = normalize_log_level,
) -> None:
    """Apply per-domain overrides such as ``{"oauth": "debug"}`` to ``<prefix>.<domain>`` loggers."""
    if not isinstance(domains, Mapping):
        return
    for raw_domain, raw_level in domains.items():
        domain = str(raw_domain or "").strip().lower()
        if domain:
            child = logging.getLogger(f"{logger_prefix}.{domain}")
            child.setLevel(_level_number(normalize_level(raw_level)))
