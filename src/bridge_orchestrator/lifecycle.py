from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from bridge_core.config import LifecycleConfig
from bridge_core.errors import BridgeRequestError, BridgeUnreachableError, ContainerRuntimeError
from bridge_core.logging import log_extra
from bridge_core.merge import merge_deep
from bridge_core.shared import elapsed_ms, redact_secrets
from bridge_orchestrator.client import BridgeClient
from bridge_orchestrator.container import ContainerRuntime
from bridge_orchestrator.legacy import LegacyExecPath

LOGGER = logging.getLogger("bridge_orchestrator.lifecycle")

INJECTED_VIA_BRIDGE = "bridge"
INJECTED_VIA_EXEC = "exec"
INJECTED_NONE = "none"


@dataclass
class SetupReport:
    container_id: str
    running: bool = False
    permissions_fixed: bool = False
    bridge_ready: bool = False
    injected_via: str = INJECTED_NONE
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.running and not self.errors

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["ok"] = self.ok
        return payload


class LifecycleCoordinator:
    """Post-start sequence: running, ownership, bridge readiness, then config injection."""

    def __init__(
        self,
        *,
        runtime: ContainerRuntime,
        client: BridgeClient,
        legacy: LegacyExecPath,
        config: LifecycleConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runtime = runtime
        self.client = client
        self.legacy = legacy
        self.config = config or LifecycleConfig()
        self._sleep = sleep
        self._monotonic = monotonic

    def wait_for_running(self, container_id: str) -> bool:
        for poll in range(self.config.running_poll_attempts):
            if poll > 0:
                self._sleep(self.config.running_poll_interval_seconds)
            try:
                if self.runtime.inspect(container_id).running:
                    return True
            except ContainerRuntimeError:
                continue
        return False

    def fix_permissions(self, container_id: str) -> bool:
        cmd = ["chown", "-R", self.config.owner, *self.config.chown_paths]
        try:
            result = self.runtime.exec(container_id, cmd, user="root")
        except ContainerRuntimeError as exc:
            LOGGER.warning(
                "Ownership repair failed: %s",
                exc,
                extra=log_extra("lifecycle", "chown", sandbox_id=container_id, result="error"),
            )
            return False
        return result.ok

    def wait_for_bridge(self, container_id: str) -> bool:
        interval = self.config.bridge_poll_interval_seconds
        deadline = self._monotonic() + self.config.bridge_wait_timeout_seconds
        while True:
            if self.client.probe(container_id):
                return True
            now = self._monotonic()
            if now >= deadline:
                LOGGER.warning(
                    "Bridge not ready after %ss.",
                    self.config.bridge_wait_timeout_seconds,
                    extra=log_extra("lifecycle", "wait_for_bridge", sandbox_id=container_id, result="timeout"),
                )
                return False
            self._sleep(min(interval, deadline - now))

    def post_start_setup(
        self,
        container_id: str,
        *,
        config_update: dict[str, Any] | None = None,
        auth_profiles: dict[str, Any] | None = None,
    ) -> SetupReport:
        started_at = time.monotonic()
        report = SetupReport(container_id=container_id)

        report.running = self.wait_for_running(container_id)
        if not report.running:
            report.errors.append("container did not reach running state")
            report.duration_ms = elapsed_ms(started_at)
            return report

        report.permissions_fixed = self.fix_permissions(container_id)
        report.bridge_ready = self.wait_for_bridge(container_id)

        payload = dict(config_update or {})
        if auth_profiles:
            payload = merge_deep(payload, {"auth": {"profiles": auth_profiles}})
        if payload:
            self._inject(container_id, payload, report)

        report.duration_ms = elapsed_ms(started_at)
        LOGGER.info(
            "Post-start setup finished.",
            extra=log_extra(
                "lifecycle",
                "post_start_setup",
                sandbox_id=container_id,
                result="ok" if report.ok else "degraded",
                duration_ms=report.duration_ms,
            ),
        )
        return report

    def _inject(self, container_id: str, payload: dict[str, Any], report: SetupReport) -> None:
        if report.bridge_ready:
            try:
                self.client.update_config(container_id, payload, reload=True)
                report.injected_via = INJECTED_VIA_BRIDGE
                return
            except BridgeUnreachableError as exc:
                LOGGER.warning(
                    "Bridge push failed after readiness: %s",
                    exc,
                    extra=log_extra("lifecycle", "inject", sandbox_id=container_id, result="fallback"),
                )
            except BridgeRequestError as exc:
                report.errors.append(redact_secrets(str(exc)))
                return
        try:
            self.legacy.write_config(container_id, payload, restart=True)
            report.injected_via = INJECTED_VIA_EXEC
        except ContainerRuntimeError as exc:
            report.errors.append(redact_secrets(str(exc)))
