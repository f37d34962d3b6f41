from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any, Callable

from bridge_core.errors import (
    InvalidRequestError,
    OAuthFlowNotFoundError,
    OAuthLoginError,
    OAuthTimeoutError,
)
from bridge_core.logging import log_extra
from bridge_core.shared import elapsed_ms, redact_secrets
from sandbox_bridge.runtime.matchers import (
    MATCH_ERROR,
    LoginUrlMatcher,
    MatchEvent,
    OutputMatcher,
    callback_result_matcher,
)
from sandbox_bridge.runtime.terminal import ManagedProcess, PtyProcess

LOGGER = logging.getLogger("sandbox_bridge.oauth")

FLOW_LOGIN_STARTED = "login_started"
FLOW_URL_EMITTED = "url_emitted"
FLOW_CALLBACK_SUBMITTED = "callback_submitted"
FLOW_COMPLETE = "complete"
FLOW_ERROR = "error"
FLOW_TIMEOUT = "timeout"

_PROVIDER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_BUFFER_LIMIT = 65536
LATCH_TIMED_OUT = object()


class ResponseLatch:
    """Holds the first value offered to it; later offers are ignored."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._event = Event()
        self._value: Any = None

    @property
    def resolved(self) -> bool:
        return self._event.is_set()

    def resolve(self, value: Any) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def wait(self, timeout: float) -> Any:
        self._event.wait(timeout)
        self.resolve(LATCH_TIMED_OUT)
        return self._value


@dataclass
class OAuthFlow:
    provider: str
    process: ManagedProcess
    state: str = FLOW_LOGIN_STARTED
    output_buffer: str = ""
    last_activity: float = field(default_factory=time.monotonic)
    matcher: OutputMatcher | None = None
    latch: ResponseLatch = field(default_factory=ResponseLatch)
    exit_code: int | None = None
    lock: Lock = field(default_factory=Lock, repr=False)


class OAuthFlowManager:
    def __init__(
        self,
        *,
        cli_binary: str,
        login_timeout_seconds: float = 10.0,
        callback_timeout_seconds: float = 20.0,
        terminal_cols: int = 120,
        terminal_rows: int = 30,
        line_terminator: str = "\r",
        process_factory: Callable[[list[str]], ManagedProcess] | None = None,
        url_matcher_factory: Callable[[], OutputMatcher] = LoginUrlMatcher,
        result_matcher_factory: Callable[[], OutputMatcher] = callback_result_matcher,
    ) -> None:
        self.cli_binary = str(cli_binary)
        self.login_timeout_seconds = float(login_timeout_seconds)
        self.callback_timeout_seconds = float(callback_timeout_seconds)
        self.line_terminator = line_terminator
        self._terminal_cols = int(terminal_cols)
        self._terminal_rows = int(terminal_rows)
        self._process_factory = process_factory or self._spawn_pty
        self._url_matcher_factory = url_matcher_factory
        self._result_matcher_factory = result_matcher_factory
        self._flows_lock = Lock()
        self._flows: dict[str, OAuthFlow] = {}

    def _spawn_pty(self, cmd: list[str]) -> ManagedProcess:
        return PtyProcess(cmd, cols=self._terminal_cols, rows=self._terminal_rows)

    def login_command(self, provider: str) -> list[str]:
        return [self.cli_binary, "models", "auth", "login", "--provider", provider, "--set-default", "--no-browser"]

    def active_providers(self) -> list[str]:
        with self._flows_lock:
            return sorted(self._flows.keys())

    def flow_state(self, provider: str) -> str | None:
        with self._flows_lock:
            flow = self._flows.get(provider)
        return flow.state if flow is not None else None

    @staticmethod
    def _normalize_provider(provider: Any) -> str:
        normalized = str(provider or "").strip()
        if not normalized:
            raise InvalidRequestError("provider is required")
        if not _PROVIDER_RE.match(normalized):
            raise InvalidRequestError("provider contains disallowed characters")
        return normalized

    def start_login(self, provider: Any) -> str:
        provider = self._normalize_provider(provider)
        started_at = time.monotonic()
        process = self._process_factory(self.login_command(provider))
        flow = OAuthFlow(provider=provider, process=process, matcher=self._url_matcher_factory())

        with self._flows_lock:
            previous = self._flows.get(provider)
            self._flows[provider] = flow
        if previous is not None:
            LOGGER.info(
                "Superseding active login flow.",
                extra=log_extra("oauth", "start_login", provider=provider, result="superseded"),
            )
            previous.latch.resolve(MatchEvent(kind=MATCH_ERROR, value="superseded by a newer login"))
            previous.process.kill()

        try:
            process.start(
                lambda chunk: self._on_output(flow, chunk),
                lambda exit_code: self._on_exit(flow, exit_code),
            )
        except OSError as exc:
            self._discard(flow, state=FLOW_ERROR)
            raise OAuthLoginError(f"Unable to start login for {provider}: {exc}") from exc

        outcome = flow.latch.wait(self.login_timeout_seconds)
        if outcome is LATCH_TIMED_OUT:
            self._discard(flow, state=FLOW_TIMEOUT)
            LOGGER.warning(
                "Login produced no authorization URL in time.",
                extra=log_extra(
                    "oauth",
                    "start_login",
                    provider=provider,
                    result="timeout",
                    duration_ms=elapsed_ms(started_at),
                    error_class="OAuthTimeoutError",
                ),
            )
            raise OAuthTimeoutError(f"Timed out waiting for {provider} authorization URL")
        if not outcome.ok:
            self._discard(flow, state=FLOW_ERROR)
            raise OAuthLoginError(redact_secrets(outcome.value) or f"Login for {provider} failed")

        with flow.lock:
            flow.state = FLOW_URL_EMITTED
        LOGGER.info(
            "Authorization URL emitted.",
            extra=log_extra(
                "oauth", "start_login", provider=provider, result="url_emitted", duration_ms=elapsed_ms(started_at)
            ),
        )
        return outcome.value

    def submit_callback(self, provider: Any, callback_url: Any) -> str:
        provider = self._normalize_provider(provider)
        callback = str(callback_url or "").strip()
        if not callback:
            raise InvalidRequestError("callbackUrl is required")
        if "\n" in callback or "\r" in callback:
            raise InvalidRequestError("callbackUrl must be a single line")

        with self._flows_lock:
            flow = self._flows.get(provider)
        if flow is None:
            raise OAuthFlowNotFoundError(f"No active login flow for {provider}")

        started_at = time.monotonic()
        with flow.lock:
            if flow.state != FLOW_URL_EMITTED:
                raise InvalidRequestError(f"Login flow for {provider} is not waiting for a callback")
            flow.state = FLOW_CALLBACK_SUBMITTED
            flow.latch = ResponseLatch()
            flow.output_buffer = ""
            flow.matcher = self._result_matcher_factory()
            latch = flow.latch

        try:
            flow.process.write(callback + self.line_terminator)
        except OSError as exc:
            self._discard(flow, state=FLOW_ERROR)
            raise OAuthLoginError(f"Unable to submit callback for {provider}: {exc}") from exc

        outcome = latch.wait(self.callback_timeout_seconds)
        if outcome is LATCH_TIMED_OUT:
            self._discard(flow, state=FLOW_TIMEOUT)
            raise OAuthTimeoutError(f"Timed out waiting for {provider} login to complete")
        if not outcome.ok:
            self._discard(flow, state=FLOW_ERROR)
            LOGGER.warning(
                "Login callback rejected.",
                extra=log_extra(
                    "oauth",
                    "submit_callback",
                    provider=provider,
                    result="error",
                    duration_ms=elapsed_ms(started_at),
                    error_class="OAuthLoginError",
                ),
            )
            raise OAuthLoginError(redact_secrets(outcome.value) or f"Login for {provider} failed")

        self._discard(flow, state=FLOW_COMPLETE)
        LOGGER.info(
            "Login completed.",
            extra=log_extra(
                "oauth", "submit_callback", provider=provider, result="complete", duration_ms=elapsed_ms(started_at)
            ),
        )
        return outcome.value

    def cancel(self, provider: str) -> bool:
        with self._flows_lock:
            flow = self._flows.get(provider)
        if flow is None:
            return False
        flow.latch.resolve(MatchEvent(kind=MATCH_ERROR, value="login cancelled"))
        self._discard(flow, state=FLOW_ERROR)
        return True

    def shutdown(self) -> None:
        with self._flows_lock:
            flows = list(self._flows.values())
        for flow in flows:
            self.cancel(flow.provider)

    def _on_output(self, flow: OAuthFlow, chunk: str) -> None:
        with flow.lock:
            flow.output_buffer = (flow.output_buffer + chunk)[-_BUFFER_LIMIT:]
            flow.last_activity = time.monotonic()
            matcher = flow.matcher
            if matcher is None:
                return
            event = matcher.match(flow.output_buffer)
            if event is None:
                return
            flow.matcher = None
            latch = flow.latch
        latch.resolve(event)

    def _on_exit(self, flow: OAuthFlow, exit_code: int | None) -> None:
        with flow.lock:
            flow.exit_code = exit_code
            flow.matcher = None
            latch = flow.latch
        latch.resolve(MatchEvent(kind=MATCH_ERROR, value=f"login process exited (code {exit_code})"))
        self._unregister(flow)

    def _unregister(self, flow: OAuthFlow) -> bool:
        with self._flows_lock:
            if self._flows.get(flow.provider) is not flow:
                return False
            del self._flows[flow.provider]
            return True

    def _discard(self, flow: OAuthFlow, *, state: str) -> None:
        with flow.lock:
            flow.state = state
            flow.matcher = None
        self._unregister(flow)
        flow.process.kill()
