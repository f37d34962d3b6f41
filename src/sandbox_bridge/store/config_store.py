from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Callable

from bridge_core.errors import ConfigStoreError
from bridge_core.logging import log_extra

LOGGER = logging.getLogger("sandbox_bridge.store")


class JsonDocumentStore:
    """One JSON object on disk, replaced atomically on every write."""

    def __init__(
        self,
        *,
        path: Path,
        new_document_factory: Callable[[], dict[str, Any]],
        lock: RLock | None = None,
        file_mode: int = 0o600,
    ) -> None:
        self.path = Path(path)
        self._lock = lock or RLock()
        self._new_document_factory = new_document_factory
        self._file_mode = file_mode

    def ensure_initialized(self) -> bool:
        """Write the default document when the file is missing. Returns True when created."""
        with self._lock:
            if self.path.exists():
                return False
            self.save(self._new_document_factory())
        LOGGER.info(
            "Created default document at %s.",
            self.path,
            extra=log_extra("store", "initialize", result="created"),
        )
        return True

    def load(self, *, preserve_corrupt: bool = False) -> dict[str, Any]:
        """Return the stored object, or a fresh default when the file is missing or unreadable JSON.

        Reads never touch the file. Writers pass ``preserve_corrupt=True`` so a
        damaged document is moved aside before ``save`` replaces it.
        """
        with self._lock:
            if not self.path.exists():
                return self._new_document_factory()
            try:
                raw = self.path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigStoreError(f"Unable to read {self.path}: {exc}") from exc
            try:
                loaded = json.loads(raw) if raw.strip() else None
            except json.JSONDecodeError:
                loaded = None
            if isinstance(loaded, dict):
                return loaded
            if not preserve_corrupt:
                LOGGER.warning(
                    "Document at %s is not a JSON object; serving defaults.",
                    self.path,
                    extra=log_extra("store", "load", result="corrupt", error_class="ConfigStoreError"),
                )
                return self._new_document_factory()
            preserved = self._preserve_corrupt_file_locked()
            LOGGER.warning(
                "Document at %s was not a JSON object; moved to %s before rewriting.",
                self.path,
                preserved,
                extra=log_extra("store", "load", result="preserved", error_class="ConfigStoreError"),
            )
            return self._new_document_factory()

    def save(self, document: dict[str, Any]) -> None:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
            except OSError as exc:
                raise ConfigStoreError(f"Unable to prepare write for {self.path}: {exc}") from exc
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fp:
                    json.dump(document, fp, indent=2)
                    fp.write("\n")
                    fp.flush()
                    os.fsync(fp.fileno())
                os.chmod(tmp_path, self._file_mode)
                os.replace(tmp_path, self.path)
            except (OSError, TypeError, ValueError) as exc:
                tmp_path.unlink(missing_ok=True)
                raise ConfigStoreError(f"Unable to write {self.path}: {exc}") from exc

    def _preserve_corrupt_file_locked(self) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        base_name = f"{self.path.name}.corrupt-{timestamp}"
        preserved_path = self.path.with_name(base_name)
        suffix = 1
        while preserved_path.exists():
            preserved_path = self.path.with_name(f"{base_name}.{suffix}")
            suffix += 1
        try:
            self.path.replace(preserved_path)
        except OSError as exc:
            raise ConfigStoreError(f"Failed to preserve corrupt file {self.path}: {exc}") from exc
        return preserved_path
