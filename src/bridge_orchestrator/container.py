from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Protocol

from bridge_core.config import DEFAULT_BRIDGE_PORT
from bridge_core.errors import ContainerRuntimeError

CONTAINER_STATUS_RUNNING = "running"
CONTAINER_STATUS_STOPPED = "stopped"


@dataclass(frozen=True)
class ContainerInfo:
    status: str
    ip: str = ""
    bridge_host_port: str = ""
    started_at: str = ""

    @property
    def running(self) -> bool:
        return self.status == CONTAINER_STATUS_RUNNING


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}{self.stderr}"


class ContainerRuntime(Protocol):
    def inspect(self, container_id: str) -> ContainerInfo: ...

    def start(self, container_id: str) -> None: ...

    def stop(self, container_id: str) -> None: ...

    def restart(self, container_id: str) -> None: ...

    def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        user: str | None = None,
        stdin: str | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecResult: ...


def parse_inspect_payload(
    payload: Any,
    *,
    network: str | None = None,
    bridge_port: int = DEFAULT_BRIDGE_PORT,
) -> ContainerInfo:
    entry = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(entry, dict):
        return ContainerInfo(status=CONTAINER_STATUS_STOPPED)
    state = entry.get("State") if isinstance(entry.get("State"), dict) else {}
    settings = entry.get("NetworkSettings") if isinstance(entry.get("NetworkSettings"), dict) else {}
    networks = settings.get("Networks") if isinstance(settings.get("Networks"), dict) else {}

    ip = ""
    if network and isinstance(networks.get(network), dict):
        ip = str(networks[network].get("IPAddress") or "")
    if not ip:
        for attached in networks.values():
            if isinstance(attached, dict) and attached.get("IPAddress"):
                ip = str(attached["IPAddress"])
                break

    host_port = ""
    ports = settings.get("Ports") if isinstance(settings.get("Ports"), dict) else {}
    bindings = ports.get(f"{bridge_port}/tcp")
    if isinstance(bindings, list) and bindings and isinstance(bindings[0], dict):
        host_port = str(bindings[0].get("HostPort") or "")

    return ContainerInfo(
        status=str(state.get("Status") or CONTAINER_STATUS_STOPPED),
        ip=ip,
        bridge_host_port=host_port,
        started_at=str(state.get("StartedAt") or ""),
    )


class DockerCliRuntime:
    """``ContainerRuntime`` backed by the ``docker`` command line."""

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        network: str | None = None,
        bridge_port: int = DEFAULT_BRIDGE_PORT,
        command_timeout_seconds: float = 60.0,
    ) -> None:
        self.docker_binary = docker_binary
        self.network = network
        self.bridge_port = int(bridge_port)
        self.command_timeout_seconds = float(command_timeout_seconds)

    def _run(
        self,
        args: list[str],
        *,
        stdin: str | None = None,
        timeout_seconds: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        if shutil.which(self.docker_binary) is None:
            raise ContainerRuntimeError(f"{self.docker_binary} command not found in PATH")
        try:
            return subprocess.run(
                [self.docker_binary, *args],
                check=False,
                capture_output=True,
                text=True,
                input=stdin,
                timeout=timeout_seconds or self.command_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise ContainerRuntimeError(f"docker {args[0]} timed out") from exc
        except (OSError, subprocess.SubprocessError) as exc:
            raise ContainerRuntimeError(f"docker {args[0]} failed: {type(exc).__name__}: {exc}") from exc

    def _checked(self, args: list[str]) -> str:
        result = self._run(args)
        if result.returncode != 0:
            detail = f"{result.stdout or ''}{result.stderr or ''}".strip()
            raise ContainerRuntimeError(detail or f"docker {args[0]} exited with code {result.returncode}")
        return result.stdout or ""

    def inspect(self, container_id: str) -> ContainerInfo:
        if not str(container_id or "").strip():
            return ContainerInfo(status=CONTAINER_STATUS_STOPPED)
        result = self._run(["inspect", container_id])
        if result.returncode != 0:
            return ContainerInfo(status=CONTAINER_STATUS_STOPPED)
        try:
            payload = json.loads(result.stdout or "null")
        except json.JSONDecodeError:
            return ContainerInfo(status=CONTAINER_STATUS_STOPPED)
        return parse_inspect_payload(payload, network=self.network, bridge_port=self.bridge_port)

    def start(self, container_id: str) -> None:
        self._checked(["start", container_id])

    def stop(self, container_id: str) -> None:
        self._checked(["stop", container_id])

    def restart(self, container_id: str) -> None:
        self._checked(["restart", container_id])

    def exec(
        self,
        container_id: str,
        cmd: list[str],
        *,
        user: str | None = None,
        stdin: str | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecResult:
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        if user:
            args.extend(["-u", user])
        args.append(container_id)
        args.extend(cmd)
        result = self._run(args, stdin=stdin, timeout_seconds=timeout_seconds)
        return ExecResult(exit_code=int(result.returncode), stdout=result.stdout or "", stderr=result.stderr or "")
