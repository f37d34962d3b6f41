from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Any

from bridge_core.errors import ConfigStoreError, InvalidRequestError, SessionNotFoundError
from bridge_core.logging import log_extra
from sandbox_bridge.store.config_store import JsonDocumentStore

LOGGER = logging.getLogger("sandbox_bridge.sessions")

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")


def _validate_session_id(session_id: Any) -> str:
    normalized = str(session_id or "").strip()
    if not normalized or not _SESSION_ID_RE.match(normalized) or normalized in {".", ".."}:
        raise InvalidRequestError("Invalid session id.")
    return normalized


class SessionService:
    """Conversation sessions kept by the agent runtime under ``agents/main/sessions``."""

    def __init__(self, *, sessions_dir: Path, lock: Lock | None = None) -> None:
        self.sessions_dir = Path(sessions_dir)
        self._lock = lock or Lock()
        self._index = JsonDocumentStore(path=self.sessions_dir / "sessions.json", new_document_factory=dict)

    def transcript_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.jsonl"

    def _entries(self) -> dict[str, dict[str, Any]]:
        index = self._index.load()
        entries: dict[str, dict[str, Any]] = {}
        for key, value in index.items():
            if isinstance(value, Mapping):
                entries[str(key)] = dict(value)
        return entries

    def _resolve(self, entries: dict[str, dict[str, Any]], session_id: str) -> tuple[str, dict[str, Any]]:
        if session_id in entries:
            return session_id, entries[session_id]
        for key, entry in entries.items():
            if str(entry.get("sessionId") or "") == session_id:
                return key, entry
        raise SessionNotFoundError(f"Session {session_id} not found")

    def list_sessions(self) -> list[dict[str, Any]]:
        sessions = []
        for key, entry in self._entries().items():
            payload = {"key": key}
            payload.update(entry)
            sessions.append(payload)
        sessions.sort(key=lambda item: item.get("updatedAt") or 0, reverse=True)
        return sessions

    def history(self, session_id: Any) -> list[Any]:
        requested = _validate_session_id(session_id)
        _key, entry = self._resolve(self._entries(), requested)
        transcript = self.transcript_path(_validate_session_id(entry.get("sessionId") or requested))
        if not transcript.is_file():
            return []
        messages: list[Any] = []
        try:
            with transcript.open("r", encoding="utf-8", errors="replace") as fp:
                for line in fp:
                    stripped = line.strip()
                    if not stripped:
                        continue
                    try:
                        messages.append(json.loads(stripped))
                    except json.JSONDecodeError:
                        continue
        except OSError as exc:
            raise ConfigStoreError(f"Unable to read transcript {transcript}: {exc}") from exc
        return messages

    def delete(self, session_id: Any) -> dict[str, Any]:
        requested = _validate_session_id(session_id)
        with self._lock:
            key, entry = self._resolve(self._entries(), requested)
            index = self._index.load(preserve_corrupt=True)
            index.pop(key, None)
            self._index.save(index)
            transcript_id = str(entry.get("sessionId") or "")
            if transcript_id and _SESSION_ID_RE.match(transcript_id):
                self.transcript_path(transcript_id).unlink(missing_ok=True)
        LOGGER.info("Session removed.", extra=log_extra("sessions", "delete", result="ok"))
        return {"key": key, "sessionId": entry.get("sessionId")}
