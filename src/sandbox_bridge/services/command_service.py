from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Callable

from bridge_core.errors import CommandFailedError, CommandTimeoutError, InvalidRequestError
from bridge_core.logging import log_extra
from bridge_core.shared import iso_now, parse_json_output, redact_secrets
from sandbox_bridge.integrations.command_runner import CliResult, run_cli

LOGGER = logging.getLogger("sandbox_bridge.command")


@dataclass(frozen=True)
class CommandRecord:
    command: str
    ok: bool
    exit_code: int | None
    duration_ms: int
    at: str

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CommandOutcome:
    data: Any
    stderr: str
    exit_code: int


class CommandService:
    def __init__(
        self,
        *,
        cli_binary: str,
        timeout_seconds: float,
        history_size: int = 20,
        runner: Callable[..., CliResult] = run_cli,
    ) -> None:
        self.cli_binary = str(cli_binary)
        self.timeout_seconds = float(timeout_seconds)
        self._runner = runner
        self._history_lock = Lock()
        self._history: deque[CommandRecord] = deque(maxlen=max(1, int(history_size)))

    def recent_commands(self) -> list[dict[str, Any]]:
        with self._history_lock:
            return [record.to_payload() for record in self._history]

    def _record(self, command: str, *, ok: bool, exit_code: int | None, duration_ms: int) -> None:
        record = CommandRecord(command=command, ok=ok, exit_code=exit_code, duration_ms=duration_ms, at=iso_now())
        with self._history_lock:
            self._history.append(record)

    @staticmethod
    def normalize_args(args: Any) -> list[str]:
        if not isinstance(args, list) or not args:
            raise InvalidRequestError("args must be a non-empty list of strings")
        if any(not isinstance(arg, str) for arg in args):
            raise InvalidRequestError("args must be a non-empty list of strings")
        return list(args)

    def run(self, args: Any, *, timeout_seconds: float | None = None) -> CommandOutcome:
        argv = self.normalize_args(args)
        command_name = argv[0]
        timeout = self.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        try:
            result = self._runner([self.cli_binary, *argv], timeout_seconds=timeout)
        except CommandTimeoutError:
            self._record(command_name, ok=False, exit_code=None, duration_ms=int(timeout * 1000))
            LOGGER.warning(
                "CLI command timed out.",
                extra=log_extra("command", command_name, result="timeout", error_class="CommandTimeoutError"),
            )
            raise
        except CommandFailedError as exc:
            self._record(command_name, ok=False, exit_code=exc.exit_code, duration_ms=0)
            raise

        is_json, parsed = parse_json_output(result.stdout)
        if is_json:
            data: Any = parsed
        elif result.exit_code == 0:
            data = result.stdout
        else:
            self._record(command_name, ok=False, exit_code=result.exit_code, duration_ms=result.duration_ms)
            LOGGER.warning(
                "CLI command failed with exit code %s.",
                result.exit_code,
                extra=log_extra(
                    "command",
                    command_name,
                    result="error",
                    duration_ms=result.duration_ms,
                    error_class="CommandFailedError",
                ),
            )
            raise CommandFailedError(
                f"Command failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                stdout=redact_secrets(result.stdout),
                stderr=redact_secrets(result.stderr),
            )

        self._record(command_name, ok=True, exit_code=result.exit_code, duration_ms=result.duration_ms)
        LOGGER.info(
            "CLI command finished.",
            extra=log_extra("command", command_name, result="ok", duration_ms=result.duration_ms),
        )
        return CommandOutcome(data=data, stderr=redact_secrets(result.stderr), exit_code=result.exit_code)

    def deep_status(self) -> dict[str, Any]:
        """Run ``<cli> status --json``; failures are reported in the payload."""
        try:
            outcome = self.run(["status", "--json"])
        except (CommandFailedError, CommandTimeoutError) as exc:
            return {"ok": False, "error": redact_secrets(str(exc)), "error_code": exc.error_code}
        return {"ok": True, "data": outcome.data}
