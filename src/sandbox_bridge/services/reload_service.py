from __future__ import annotations

import logging
import os
import signal
import threading
from typing import Any, Callable

from bridge_core.config import RELOAD_STRATEGY_HOT, RELOAD_STRATEGY_RESTART, parse_reload_strategy
from bridge_core.errors import ConfigError, InvalidRequestError
from bridge_core.logging import log_extra
from bridge_core.shared import coerce_bool

LOGGER = logging.getLogger("sandbox_bridge.reload")


class ProcessReloader:
    """Asks the supervising parent to restart the agent runtime.

    The signal goes out after a short delay so the HTTP response that
    triggered it can flush first.
    """

    def __init__(
        self,
        *,
        delay_seconds: float = 0.5,
        getppid: Callable[[], int] = os.getppid,
        getpid: Callable[[], int] = os.getpid,
        kill: Callable[[int, int], None] = os.kill,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.delay_seconds = float(delay_seconds)
        self._getppid = getppid
        self._getpid = getpid
        self._kill = kill
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: Any = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def schedule(self) -> bool:
        """Arm the restart timer. Returns False when one is already pending."""
        with self._lock:
            if self._pending is not None:
                return False
            timer = self._timer_factory(self.delay_seconds, self._fire)
            timer.daemon = True
            self._pending = timer
        timer.start()
        return True

    def _fire(self) -> None:
        with self._lock:
            self._pending = None
        parent = self._getppid()
        try:
            if parent <= 1:
                raise ProcessLookupError("no supervising parent")
            self._kill(parent, signal.SIGHUP)
            LOGGER.info("Sent SIGHUP to parent %s.", parent, extra=log_extra("reload", "restart", result="sighup"))
            return
        except OSError as exc:
            LOGGER.warning(
                "Signalling parent failed (%s); terminating bridge.",
                exc,
                extra=log_extra("reload", "restart", result="self_terminate", error_class=type(exc).__name__),
            )
        self._kill(self._getpid(), signal.SIGTERM)


class ReloadService:
    def __init__(self, *, reloader: ProcessReloader, default_strategy: str = RELOAD_STRATEGY_RESTART) -> None:
        self._reloader = reloader
        self.default_strategy = parse_reload_strategy(default_strategy)

    def resolve_strategy(self, header_value: Any) -> str:
        if header_value is None or not str(header_value).strip():
            return self.default_strategy
        try:
            return parse_reload_strategy(header_value, label="x-strategy")
        except ConfigError as exc:
            raise InvalidRequestError(str(exc)) from exc

    @staticmethod
    def reload_requested(header_value: Any, *, default: bool) -> bool:
        return coerce_bool(header_value, default=default)

    def apply(self, *, reload: bool, strategy: str) -> str:
        """Act on a completed write; returns the action taken."""
        if not reload:
            return "none"
        if strategy == RELOAD_STRATEGY_HOT:
            return RELOAD_STRATEGY_HOT
        self._reloader.schedule()
        return RELOAD_STRATEGY_RESTART
