"""Exec-into-container operations used when the bridge cannot be reached."""

from __future__ import annotations

import json
import logging
from typing import Any

from bridge_core.errors import ContainerRuntimeError
from bridge_core.logging import log_extra
from bridge_core.merge import display_config, empty_secret_store, prepare_config_update
from bridge_core.paths import SandboxPaths, default_sandbox_paths
from bridge_core.shared import extract_json, redact_secrets
from bridge_orchestrator.container import ContainerRuntime, ExecResult
from sandbox_bridge.runtime.matchers import LoginUrlMatcher

LOGGER = logging.getLogger("bridge_orchestrator.legacy")

# Owner-only temp file in the target directory, then rename over the live document.
_ATOMIC_WRITE_SCRIPT = 'umask 077 && cat > "$1" && mv -f "$1" "$2"'


class LegacyExecPath:
    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        paths: SandboxPaths | None = None,
        cli_binary: str = "openclaw",
        owner: str = "node:node",
        login_capture_seconds: float = 10.0,
        exec_timeout_seconds: float = 60.0,
    ) -> None:
        self.runtime = runtime
        self.paths = paths or default_sandbox_paths("/home/node/.openclaw")
        self.cli_binary = cli_binary
        self.owner = owner
        self.login_capture_seconds = float(login_capture_seconds)
        self.exec_timeout_seconds = float(exec_timeout_seconds)

    def _exec(self, container_id: str, cmd: list[str], **kwargs: Any) -> ExecResult:
        kwargs.setdefault("timeout_seconds", self.exec_timeout_seconds)
        return self.runtime.exec(container_id, cmd, **kwargs)

    def _exec_as_root(self, container_id: str, cmd: list[str], *, stdin: str | None = None) -> None:
        result = self._exec(container_id, cmd, user="root", stdin=stdin)
        if not result.ok:
            detail = redact_secrets(result.output.strip()) or f"exit code {result.exit_code}"
            raise ContainerRuntimeError(f"{cmd[0]} failed in {container_id}: {detail}")

    def _read_json(self, container_id: str, path: str) -> dict[str, Any]:
        result = self._exec(container_id, ["cat", path])
        if not result.ok:
            return {}
        parsed = extract_json(result.stdout)
        return parsed if isinstance(parsed, dict) else {}

    def _write_json(self, container_id: str, path: str, document: dict[str, Any]) -> None:
        parent = path.rsplit("/", 1)[0] or "/"
        self._exec_as_root(container_id, ["mkdir", "-p", parent])
        self._exec_as_root(
            container_id,
            ["sh", "-c", _ATOMIC_WRITE_SCRIPT, "sh", f"{path}.tmp", path],
            stdin=json.dumps(document, indent=2),
        )

    def read_config(self, container_id: str) -> dict[str, Any]:
        main = self._read_json(container_id, str(self.paths.config_file))
        secrets = self._read_json(container_id, str(self.paths.auth_profiles_file))
        profiles = secrets.get("profiles") if isinstance(secrets.get("profiles"), dict) else {}
        return display_config(main, profiles)

    def write_config(self, container_id: str, update: dict[str, Any], *, restart: bool = True) -> dict[str, Any]:
        current = self._read_json(container_id, str(self.paths.config_file))
        secret_document = self._read_json(container_id, str(self.paths.auth_profiles_file)) or empty_secret_store()
        merged, retained = prepare_config_update(current, update, secret_document.get("profiles"))
        if retained is not None:
            secret_document["profiles"] = retained
            secret_document.setdefault("version", 1)
            self._write_json(container_id, str(self.paths.auth_profiles_file), secret_document)
        self._write_json(container_id, str(self.paths.config_file), merged)
        self.fix_ownership(container_id)
        if restart:
            self.runtime.restart(container_id)
        LOGGER.info(
            "Config written via exec.",
            extra=log_extra("legacy", "write_config", sandbox_id=container_id, result="ok"),
        )
        return {"message": "Config updated", "restarted": restart}

    def fix_ownership(self, container_id: str) -> None:
        self._exec_as_root(container_id, ["chown", "-R", self.owner, str(self.paths.state_dir)])

    def run_command(self, container_id: str, args: list[str]) -> Any:
        result = self._exec(container_id, [self.cli_binary, *args])
        output = result.stdout.strip()
        if not result.ok and not output:
            detail = redact_secrets(result.stderr.strip()) or f"exit code {result.exit_code}"
            raise ContainerRuntimeError(f"command failed: {detail}")
        parsed = extract_json(output)
        if parsed is not None:
            return parsed
        if not result.ok:
            raise ContainerRuntimeError(f"command failed with exit code {result.exit_code}: {redact_secrets(output)}")
        return output

    def _login_command(self, provider: str) -> list[str]:
        return [self.cli_binary, "models", "auth", "login", "--provider", provider, "--set-default", "--no-browser"]

    def start_login(self, container_id: str, provider: str) -> str:
        cmd = ["timeout", f"{self.login_capture_seconds:g}", *self._login_command(provider)]
        result = self._exec(container_id, cmd, timeout_seconds=self.login_capture_seconds + 5)
        output = result.output
        found = LoginUrlMatcher().match(output + "\n")
        if found is not None:
            return found.value
        if output.strip():
            return output.strip()
        raise ContainerRuntimeError(f"login produced no output (exit code {result.exit_code})")

    def submit_callback(self, container_id: str, provider: str, callback_url: str) -> str:
        result = self._exec(container_id, self._login_command(provider), stdin=f"{callback_url}\n")
        if not result.ok:
            detail = redact_secrets(result.output.strip()) or f"exit code {result.exit_code}"
            raise ContainerRuntimeError(f"OAuth callback failed: {detail}")
        return result.output.strip()
