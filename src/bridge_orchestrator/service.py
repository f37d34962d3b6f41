from __future__ import annotations

import logging
from typing import Any

from bridge_core.config import RELOAD_STRATEGY_RESTART
from bridge_core.errors import BridgeUnreachableError, ContainerRuntimeError, InvalidRequestError
from bridge_core.logging import log_extra
from bridge_core.validation import validate_cli_args, validate_config_update, with_safe_primary_model
from bridge_orchestrator.client import BridgeClient
from bridge_orchestrator.legacy import LegacyExecPath

LOGGER = logging.getLogger("bridge_orchestrator.service")


class SandboxControlService:
    """Orchestrator operations on one sandbox: bridge first, exec path when it is unreachable."""

    def __init__(self, *, client: BridgeClient, legacy: LegacyExecPath) -> None:
        self.client = client
        self.legacy = legacy

    def _degraded(self, container_id: str, operation: str, exc: Exception) -> None:
        LOGGER.warning(
            "Bridge unavailable, using exec path: %s",
            exc,
            extra=log_extra("service", operation, sandbox_id=container_id, result="fallback"),
        )

    def status(self, container_id: str, *, deep: bool = False) -> dict[str, Any]:
        try:
            return {"bridge": "ok", **self.client.status(container_id, deep=deep)}
        except BridgeUnreachableError as exc:
            self._degraded(container_id, "status", exc)
        try:
            info = self.client.runtime.inspect(container_id)
        except ContainerRuntimeError:
            return {"bridge": "unreachable", "container": "unknown"}
        return {"bridge": "unreachable", "container": info.status}

    def start(self, container_id: str) -> dict[str, Any]:
        self.client.runtime.start(container_id)
        LOGGER.info("Container started.", extra=log_extra("service", "start", sandbox_id=container_id, result="ok"))
        return {"container": self.client.runtime.inspect(container_id).status}

    def stop(self, container_id: str) -> dict[str, Any]:
        self.client.runtime.stop(container_id)
        LOGGER.info("Container stopped.", extra=log_extra("service", "stop", sandbox_id=container_id, result="ok"))
        return {"container": self.client.runtime.inspect(container_id).status}

    def get_config(self, container_id: str) -> dict[str, Any]:
        try:
            return self.client.get_config(container_id)
        except BridgeUnreachableError as exc:
            self._degraded(container_id, "config_get", exc)
        return self.legacy.read_config(container_id)

    def update_config(
        self,
        container_id: str,
        update: Any,
        *,
        reload: bool = True,
        strategy: str = RELOAD_STRATEGY_RESTART,
    ) -> dict[str, Any]:
        validate_config_update(update)
        safe_update = with_safe_primary_model(update)
        try:
            envelope = self.client.update_config(container_id, safe_update, reload=reload, strategy=strategy)
            return {"via": "bridge", **(envelope.get("data") or {})}
        except BridgeUnreachableError as exc:
            self._degraded(container_id, "config_update", exc)
        return {"via": "exec", **self.legacy.write_config(container_id, safe_update, restart=reload)}

    def run_command(self, container_id: str, args: Any) -> Any:
        argv = validate_cli_args(args)
        try:
            return self.client.run_command(container_id, argv)
        except BridgeUnreachableError as exc:
            self._degraded(container_id, "command", exc)
        return self.legacy.run_command(container_id, argv)

    def start_login(self, container_id: str, provider: str) -> str:
        if not str(provider or "").strip():
            raise InvalidRequestError("provider is required")
        try:
            return self.client.start_login(container_id, provider)
        except BridgeUnreachableError as exc:
            self._degraded(container_id, "oauth_login", exc)
        return self.legacy.start_login(container_id, provider)

    def submit_callback(self, container_id: str, provider: str, callback_url: str) -> str:
        if not str(provider or "").strip() or not str(callback_url or "").strip():
            raise InvalidRequestError("provider and callbackUrl are required")
        try:
            return self.client.submit_callback(container_id, provider, callback_url)
        except BridgeUnreachableError as exc:
            self._degraded(container_id, "oauth_callback", exc)
        return self.legacy.submit_callback(container_id, provider, callback_url)
