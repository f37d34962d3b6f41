from __future__ import annotations

import json
import re
import time
from typing import Any

# Matches `name=value`, `name: value` and JSON `"name": "value"` forms.
_ASSIGNMENT_SECRET_RE = re.compile(
    r"(?i)(?<![a-z0-9])([a-z_]*token|authorization|api_?key|key|password|secret)"
    r"([\"']?\s*[=:]\s*[\"']?)([^\s,;&\"'}]+)"
)
_PROVIDER_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9_\-]{4,}")
_SHELL_META_CHARS = (";", "|", "&", "`", "$", "(", ")", "{", "}", "<", ">", "\n", "\r", "\\")


def redact_secrets(text: str) -> str:
    if not text:
        return ""
    redacted = _PROVIDER_KEY_RE.sub("sk-[redacted]", str(text))
    return _ASSIGNMENT_SECRET_RE.sub(r"\1\2[redacted]", redacted)


def contains_shell_meta(value: str) -> bool:
    return any(char in str(value) for char in _SHELL_META_CHARS)


def extract_json(text: str) -> Any | None:
    """Return the first balanced JSON object or array embedded in ``text``."""
    if not text:
        return None
    for start, char in enumerate(text):
        if char not in "{[":
            continue
        closing = "}" if char == "{" else "]"
        depth = 0
        for end in range(start, len(text)):
            if text[end] == char:
                depth += 1
            elif text[end] == closing:
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(text[start : end + 1])
                    except json.JSONDecodeError:
                        break
    return None


def parse_json_output(text: str) -> tuple[bool, Any]:
    stripped = str(text or "").strip()
    if not stripped:
        return False, None
    try:
        return True, json.loads(stripped)
    except json.JSONDecodeError:
        return False, None


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def elapsed_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


def coerce_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default
