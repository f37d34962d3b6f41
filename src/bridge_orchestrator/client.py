from __future__ import annotations

import json
import logging
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable

from bridge_core.config import DEFAULT_BRIDGE_PORT, RELOAD_STRATEGY_RESTART
from bridge_core.errors import BridgeRequestError, BridgeUnreachableError, ContainerRuntimeError
from bridge_core.logging import log_extra
from bridge_core.shared import elapsed_ms, extract_json, redact_secrets
from bridge_orchestrator.container import ContainerInfo, ContainerRuntime

LOGGER = logging.getLogger("bridge_orchestrator.client")

COMMAND_PATH = "/command"
NON_RETRYABLE_ERROR_CODES = frozenset({"COMMAND_FAILED", "COMMAND_TIMEOUT", "OAUTH_LOGIN_FAILED", "OAUTH_TIMEOUT"})
_LOOPBACK_FIRST_PLATFORMS = ("darwin", "win32", "cygwin")


def _decode_envelope(body: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(body) if body.strip() else None
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) and "ok" in parsed else None


def _envelope_error(envelope: dict[str, Any] | None, body: str) -> str:
    if envelope is not None:
        message = str(envelope.get("error") or "")
        stderr = str(envelope.get("stderr") or "")
        if stderr:
            message = f"{message}: {stderr}" if message else stderr
        if message:
            return redact_secrets(message)
    return redact_secrets(body.strip()[:500])


class BridgeClient:
    """Calls the in-sandbox bridge over HTTP with bounded retry."""

    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        bridge_port: int = DEFAULT_BRIDGE_PORT,
        timeout_seconds: float = 15.0,
        command_timeout_seconds: float = 60.0,
        max_attempts: int = 3,
        retry_delays_seconds: tuple[float, ...] = (1.0, 2.0),
        platform: str = sys.platform,
        loopback_exec_fallback: bool = True,
        urlopen: Callable[..., Any] = urllib.request.urlopen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runtime = runtime
        self.bridge_port = int(bridge_port)
        self.timeout_seconds = float(timeout_seconds)
        self.command_timeout_seconds = float(command_timeout_seconds)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delays_seconds = tuple(retry_delays_seconds) or (1.0,)
        self.platform = platform
        self.loopback_exec_fallback = bool(loopback_exec_fallback)
        self._urlopen = urlopen
        self._sleep = sleep

    def candidate_urls(self, info: ContainerInfo, path: str) -> list[str]:
        network_url = f"http://{info.ip}:{self.bridge_port}{path}" if info.ip else ""
        loopback_url = f"http://127.0.0.1:{info.bridge_host_port}{path}" if info.bridge_host_port else ""
        if self.platform.startswith(_LOOPBACK_FIRST_PLATFORMS):
            ordered = [loopback_url, network_url]
        else:
            ordered = [network_url, loopback_url]
        return [url for url in ordered if url]

    def _retry_delay(self, attempt: int) -> float:
        return self.retry_delays_seconds[min(attempt - 1, len(self.retry_delays_seconds) - 1)]

    def _request_headers(self, method: str, headers: dict[str, str] | None) -> dict[str, str]:
        resolved = {"Content-Type": "application/json", "Accept": "application/json"}
        if method == "POST":
            resolved["x-reload"] = "true"
        for key, value in (headers or {}).items():
            resolved[str(key)] = str(value)
        return resolved

    def call(
        self,
        container_id: str,
        method: str,
        path: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        *,
        single_attempt: bool = False,
    ) -> dict[str, Any]:
        """Send one bridge request; returns the decoded success envelope.

        ``single_attempt`` disables both the retry loop and the in-container
        curl fallback, for readiness probes.
        """
        method = method.upper()
        try:
            info = self.runtime.inspect(container_id)
        except ContainerRuntimeError as exc:
            raise BridgeUnreachableError(f"Unable to inspect container {container_id}: {exc}") from exc
        if not info.running:
            raise BridgeUnreachableError(f"Container {container_id} is not running")
        urls = self.candidate_urls(info, path)
        if not urls:
            raise BridgeUnreachableError(f"No bridge address available for container {container_id}")

        is_command = path.split("?", 1)[0] == COMMAND_PATH
        timeout = self.command_timeout_seconds if is_command else self.timeout_seconds
        attempts = 1 if is_command or single_attempt else self.max_attempts
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request_headers = self._request_headers(method, headers)
        started_at = time.monotonic()
        last_error = ""

        for attempt in range(attempts):
            if attempt > 0:
                delay = self._retry_delay(attempt)
                LOGGER.info(
                    "Bridge retry %s/%s for %s %s (backoff %.1fs)",
                    attempt + 1,
                    attempts,
                    method,
                    path,
                    delay,
                    extra=log_extra("client", path, sandbox_id=container_id, result="retry"),
                )
                self._sleep(delay)
            for url in urls:
                request = urllib.request.Request(url, data=data, method=method, headers=request_headers)
                try:
                    with self._urlopen(request, timeout=timeout) as response:
                        status_code = int(response.getcode() or 0)
                        response_body = response.read().decode("utf-8", errors="ignore")
                except urllib.error.HTTPError as exc:
                    status_code = int(exc.code or 0)
                    response_body = exc.read().decode("utf-8", errors="ignore")
                except (urllib.error.URLError, TimeoutError, OSError) as exc:
                    last_error = f"{type(exc).__name__}: {getattr(exc, 'reason', exc)}"
                    continue

                envelope = _decode_envelope(response_body)
                if status_code >= 500:
                    last_error = f"bridge error {status_code}: {_envelope_error(envelope, response_body)}"
                    if envelope is not None and envelope.get("error_code") in NON_RETRYABLE_ERROR_CODES:
                        raise BridgeRequestError(last_error, status_code=status_code, body=response_body)
                    continue
                if status_code >= 400:
                    raise BridgeRequestError(
                        f"bridge error {status_code}: {_envelope_error(envelope, response_body)}",
                        status_code=status_code,
                        body=response_body,
                    )
                if envelope is None:
                    raise BridgeRequestError(
                        f"Malformed bridge response from {path}",
                        status_code=status_code,
                        body=response_body,
                    )
                if not envelope.get("ok"):
                    raise BridgeRequestError(
                        _envelope_error(envelope, response_body), status_code=status_code, body=response_body
                    )
                LOGGER.debug(
                    "Bridge call succeeded %s %s",
                    method,
                    path,
                    extra=log_extra(
                        "client", path, sandbox_id=container_id, result="ok", duration_ms=elapsed_ms(started_at)
                    ),
                )
                return envelope

        if self.loopback_exec_fallback and not (is_command or single_attempt):
            envelope = self._call_via_exec(container_id, method, path, body, request_headers, timeout)
            if envelope is not None:
                return envelope

        LOGGER.warning(
            "Bridge unreachable for %s %s: %s",
            method,
            path,
            last_error,
            extra=log_extra(
                "client",
                path,
                sandbox_id=container_id,
                result="unreachable",
                duration_ms=elapsed_ms(started_at),
                error_class="BridgeUnreachableError",
            ),
        )
        raise BridgeUnreachableError(f"Bridge unreachable for {method} {path}: {last_error}")

    def _call_via_exec(
        self,
        container_id: str,
        method: str,
        path: str,
        body: Any,
        headers: dict[str, str],
        timeout: float,
    ) -> dict[str, Any] | None:
        """Reach the bridge on the container's own loopback through ``curl``."""
        cmd = ["curl", "-s", "-X", method]
        for key, value in headers.items():
            cmd.extend(["-H", f"{key}: {value}"])
        if body is not None:
            cmd.extend(["-d", json.dumps(body)])
        cmd.append(f"http://127.0.0.1:{self.bridge_port}{path}")
        try:
            result = self.runtime.exec(container_id, cmd, timeout_seconds=timeout)
        except ContainerRuntimeError:
            return None
        if not result.ok:
            return None
        parsed = extract_json(result.stdout)
        if not isinstance(parsed, dict) or "ok" not in parsed:
            return None
        if not parsed.get("ok"):
            raise BridgeRequestError(_envelope_error(parsed, result.stdout), body=result.stdout)
        return parsed

    def status(self, container_id: str, *, deep: bool = False) -> dict[str, Any]:
        path = "/status?deep=true" if deep else "/status"
        return self.call(container_id, "GET", path).get("data") or {}

    def get_config(self, container_id: str) -> dict[str, Any]:
        return self.call(container_id, "GET", "/config").get("data") or {}

    def update_config(
        self,
        container_id: str,
        update: dict[str, Any],
        *,
        reload: bool = True,
        strategy: str = RELOAD_STRATEGY_RESTART,
    ) -> dict[str, Any]:
        headers = {"x-reload": "true" if reload else "false", "x-strategy": strategy}
        return self.call(container_id, "POST", "/config/update", update, headers)

    def add_auth(
        self,
        container_id: str,
        provider: str,
        key: str,
        *,
        mode: str = "api_key",
        reload: bool = True,
    ) -> dict[str, Any]:
        headers = {"x-reload": "true" if reload else "false"}
        body = {"provider": provider, "key": key, "mode": mode}
        return self.call(container_id, "POST", "/auth/add", body, headers)

    def run_command(self, container_id: str, args: list[str]) -> Any:
        return self.call(container_id, "POST", COMMAND_PATH, {"args": list(args)}).get("data")

    def start_login(self, container_id: str, provider: str) -> str:
        return str(self.call(container_id, "POST", "/auth/login", {"provider": provider}).get("data") or "")

    def submit_callback(self, container_id: str, provider: str, callback_url: str) -> str:
        body = {"provider": provider, "callbackUrl": callback_url}
        return str(self.call(container_id, "POST", "/auth/callback", body).get("data") or "")

    def list_sessions(self, container_id: str) -> list[Any]:
        return list(self.call(container_id, "GET", "/sessions").get("data") or [])

    def session_history(self, container_id: str, session_id: str) -> list[Any]:
        quoted = urllib.parse.quote(session_id, safe="")
        return list(self.call(container_id, "GET", f"/sessions/{quoted}/history").get("data") or [])

    def delete_session(self, container_id: str, session_id: str) -> dict[str, Any]:
        quoted = urllib.parse.quote(session_id, safe="")
        return self.call(container_id, "DELETE", f"/sessions/{quoted}").get("data") or {}

    def restart(self, container_id: str) -> dict[str, Any]:
        return self.call(container_id, "POST", "/restart")

    def probe(self, container_id: str) -> bool:
        try:
            self.call(container_id, "GET", "/status", single_attempt=True)
        except (BridgeUnreachableError, BridgeRequestError):
            return False
        return True
