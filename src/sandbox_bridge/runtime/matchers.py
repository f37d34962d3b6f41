"""Marker matchers evaluated against the cumulative output of an interactive CLI."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

MATCH_SUCCESS = "success"
MATCH_ERROR = "error"

_ANSI_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-_]")
_URL_LINE_RE = re.compile(r"^\s*(https?://\S+)\s*$")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


@dataclass(frozen=True)
class MatchEvent:
    kind: str
    value: str

    @property
    def ok(self) -> bool:
        return self.kind == MATCH_SUCCESS


class OutputMatcher(Protocol):
    def match(self, buffer: str) -> MatchEvent | None: ...


@dataclass(frozen=True)
class Marker:
    pattern: re.Pattern[str]
    kind: str


def _line_containing(text: str, start: int) -> str:
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", start)
    if line_end < 0:
        line_end = len(text)
    return text[line_start:line_end].strip()


class MarkerMatcher:
    """First marker (in list order) found anywhere in the buffer wins."""

    def __init__(self, markers: list[Marker]) -> None:
        self.markers = list(markers)

    def match(self, buffer: str) -> MatchEvent | None:
        text = strip_ansi(buffer)
        for marker in self.markers:
            found = marker.pattern.search(text)
            if found is not None:
                return MatchEvent(kind=marker.kind, value=_line_containing(text, found.start()))
        return None


class LoginUrlMatcher:
    """Finds the authorization URL printed by ``models auth login``."""

    def __init__(
        self,
        *,
        url_pattern: re.Pattern[str] | None = None,
        prompt_pattern: re.Pattern[str] | None = None,
    ) -> None:
        self.url_pattern = url_pattern or re.compile(r"Auth URL:\s*(https?://\S+)\s")
        self.prompt_pattern = prompt_pattern or re.compile(r"(?i)paste\s+(?:the\s+)?redirect\s+url")

    def match(self, buffer: str) -> MatchEvent | None:
        text = strip_ansi(buffer).replace("\r", "\n")
        found = self.url_pattern.search(text)
        if found is not None:
            return MatchEvent(kind=MATCH_SUCCESS, value=found.group(1))
        prompt = self.prompt_pattern.search(text)
        if prompt is None:
            return None
        for line in reversed(text[: prompt.start()].splitlines()):
            bare = _URL_LINE_RE.match(line)
            if bare is not None:
                return MatchEvent(kind=MATCH_SUCCESS, value=bare.group(1))
        return None


def callback_result_matcher() -> MarkerMatcher:
    return MarkerMatcher(
        [
            Marker(re.compile(r"Auth profile:"), MATCH_SUCCESS),
            Marker(re.compile(r"Error"), MATCH_ERROR),
            Marker(re.compile(r"(?i)mismatch"), MATCH_ERROR),
            Marker(re.compile(r"(?i)failed"), MATCH_ERROR),
            Marker(re.compile(r"(?i)complete"), MATCH_SUCCESS),
        ]
    )
