from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from bridge_core.errors import CommandFailedError, CommandTimeoutError
from bridge_core.shared import elapsed_ms


@dataclass(frozen=True)
class CliResult:
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int


def run_cli(
    cmd: list[str],
    *,
    timeout_seconds: float,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> CliResult:
    resolved_env: dict[str, str] | None = None
    if env:
        resolved_env = dict(os.environ)
        for key, value in env.items():
            resolved_env[str(key)] = str(value)
    started_at = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            check=False,
            text=True,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            env=resolved_env,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(f"Command timed out after {timeout_seconds:g}s ({cmd[0]})") from exc
    except OSError as exc:
        raise CommandFailedError(f"Unable to run {cmd[0]}: {exc}", exit_code=127) from exc
    return CliResult(
        exit_code=int(result.returncode),
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        duration_ms=elapsed_ms(started_at),
    )
