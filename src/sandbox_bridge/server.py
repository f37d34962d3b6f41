from __future__ import annotations

import logging
import os
import resource
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from bridge_core import logging as core_logging
from bridge_core.config import BridgeRuntimeConfig, load_bridge_runtime_config
from bridge_core.errors import CommandFailedError, ConfigError, TypedBridgeError, typed_error_payload
from bridge_core.merge import empty_secret_store
from bridge_core.paths import SandboxPaths, resolve_sandbox_paths
from bridge_core.shared import redact_secrets
from bridge_core.validation import default_main_config
from sandbox_bridge.api.routes import register_bridge_routes
from sandbox_bridge.domains.oauth_domain import OAuthFlowManager
from sandbox_bridge.services.command_service import CommandService
from sandbox_bridge.services.config_service import ConfigService
from sandbox_bridge.services.reload_service import ProcessReloader, ReloadService
from sandbox_bridge.services.session_service import SessionService
from sandbox_bridge.store.config_store import JsonDocumentStore

LOGGER = logging.getLogger("sandbox_bridge")
CONFIG_ENV_VAR = "SANDBOX_BRIDGE_CONFIG"
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error", "critical")

_STATUS_BY_CODE = {
    "CONFIG_ERROR": 400,
    "INVALID_REQUEST": 400,
    "CONFIG_STORE_ERROR": 500,
    "COMMAND_FAILED": 500,
    "COMMAND_TIMEOUT": 504,
    "OAUTH_FLOW_NOT_FOUND": 404,
    "OAUTH_LOGIN_FAILED": 502,
    "OAUTH_TIMEOUT": 504,
    "SESSION_NOT_FOUND": 404,
}


def _error_envelope(message: str, error_code: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"ok": False, "error": redact_secrets(message), "error_code": error_code}
    payload.update(extra)
    return payload


def _core_error_response(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is None:
        return 500, _error_envelope(str(exc), "INTERNAL_ERROR")
    error_code = str(typed_payload.get("error_code") or "INTERNAL_ERROR")
    status = _STATUS_BY_CODE.get(error_code, 500)
    extra: dict[str, Any] = {}
    if isinstance(exc, CommandFailedError):
        extra = {
            "code": exc.exit_code,
            "stdout": redact_secrets(exc.stdout),
            "stderr": redact_secrets(exc.stderr),
        }
    return status, _error_envelope(typed_payload.get("detail") or "", error_code, **extra)


def _http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status == 400:
        return "BAD_REQUEST"
    if status == 404:
        return "NOT_FOUND"
    if status == 405:
        return "METHOD_NOT_ALLOWED"
    if status == 422:
        return "UNPROCESSABLE_ENTITY"
    if status in {500, 502, 503, 504}:
        return "UPSTREAM_ERROR"
    return f"HTTP_{status}"


def _memory_high_water_kb() -> int:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if sys.platform == "darwin":
        return int(usage // 1024)
    return int(usage)


class BridgeState:
    """Everything one bridge instance owns: stores, services and the OAuth registry."""

    def __init__(
        self,
        *,
        runtime_config: BridgeRuntimeConfig,
        paths: SandboxPaths,
        oauth_manager: OAuthFlowManager | None = None,
        command_service: CommandService | None = None,
        reloader: ProcessReloader | None = None,
    ) -> None:
        self.runtime_config = runtime_config
        self.paths = paths
        self.started_at = time.monotonic()
        self.main_store = JsonDocumentStore(path=paths.config_file, new_document_factory=default_main_config)
        self.secret_store = JsonDocumentStore(path=paths.auth_profiles_file, new_document_factory=empty_secret_store)
        self.config_service = ConfigService(main_store=self.main_store, secret_store=self.secret_store)
        self.command_service = command_service or CommandService(
            cli_binary=runtime_config.cli.binary,
            timeout_seconds=runtime_config.cli.command_timeout_seconds,
            history_size=runtime_config.cli.history_size,
        )
        self.session_service = SessionService(sessions_dir=paths.sessions_dir)
        self.reload_service = ReloadService(
            reloader=reloader or ProcessReloader(delay_seconds=runtime_config.reload.delay_seconds),
            default_strategy=runtime_config.reload.default_strategy,
        )
        oauth = runtime_config.oauth
        self.oauth_manager = oauth_manager or OAuthFlowManager(
            cli_binary=runtime_config.cli.binary,
            login_timeout_seconds=oauth.login_timeout_seconds,
            callback_timeout_seconds=oauth.callback_timeout_seconds,
            terminal_cols=oauth.terminal_cols,
            terminal_rows=oauth.terminal_rows,
            line_terminator=oauth.line_terminator,
        )

    def initialize_stores(self) -> list[str]:
        return self.config_service.ensure_initialized()

    def status_payload(self, *, deep: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": "ok",
            "uptime": round(time.monotonic() - self.started_at, 3),
            "pid": os.getpid(),
            "memory": {"max_rss_kb": _memory_high_water_kb()},
            "summary": self.config_service.status_summary(),
            "oauth": {"active_providers": self.oauth_manager.active_providers()},
            "recent_commands": self.command_service.recent_commands(),
        }
        if deep:
            payload["cli_status"] = self.command_service.deep_status()
        return payload

    def shutdown(self) -> None:
        self.oauth_manager.shutdown()


def build_app(state: BridgeState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        state.shutdown()

    app = FastAPI(title="sandbox-bridge", lifespan=lifespan)
    app.state.bridge_state = state

    @app.exception_handler(TypedBridgeError)
    async def _handle_typed_bridge_error(_request: Request, exc: TypedBridgeError) -> JSONResponse:
        status, payload = _core_error_response(exc)
        if status >= 500:
            LOGGER.warning(
                "Request failed: %s",
                exc,
                extra=core_logging.log_extra("server", "request", result="error", error_class=type(exc).__name__),
            )
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        status = int(exc.status_code or 500)
        return JSONResponse(
            status_code=status,
            content=_error_envelope(str(exc.detail or ""), _http_error_code(status)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_envelope(str(exc), "INVALID_REQUEST"))

    register_bridge_routes(app, state=state, logger=LOGGER)
    return app


def _resolve_log_level(log_level: str | None, runtime_config: BridgeRuntimeConfig) -> str:
    cli_value = str(log_level or "").strip()
    if cli_value:
        return core_logging.normalize_log_level(cli_value)
    return core_logging.normalize_log_level(runtime_config.logging.level)


def _uvicorn_log_level(level: str) -> str:
    normalized = core_logging.normalize_log_level(level)
    if normalized == "debug":
        return "info"
    return normalized


@click.command(help="Run the in-sandbox control-plane bridge.")
@click.option(
    "--config-file",
    envvar=CONFIG_ENV_VAR,
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help=f"Bridge TOML config (also read from {CONFIG_ENV_VAR}).",
)
@click.option("--host", default=None, show_default="config server.host or 0.0.0.0")
@click.option("--port", default=None, type=int, show_default="config server.port or 4444")
@click.option(
    "--state-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    show_default="config paths.state_dir",
    help="Agent runtime state directory holding both JSON stores.",
)
@click.option("--cli-binary", default=None, show_default="config cli.binary or openclaw")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    show_default="config logging.level or info",
)
def main(
    config_file: Path | None,
    host: str | None,
    port: int | None,
    state_dir: Path | None,
    cli_binary: str | None,
    log_level: str | None,
) -> None:
    try:
        runtime_config = load_bridge_runtime_config(config_file)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    normalized_log_level = _resolve_log_level(log_level, runtime_config)
    core_logging.configure_structured_logger(LOGGER, level=normalized_log_level)
    core_logging.configure_domain_log_levels(domains=runtime_config.logging.domains, logger_prefix="sandbox_bridge")

    if cli_binary:
        runtime_config = replace(runtime_config, cli=replace(runtime_config.cli, binary=cli_binary))
    paths = resolve_sandbox_paths(runtime_config.paths, state_dir_override=state_dir)
    state = BridgeState(runtime_config=runtime_config, paths=paths)
    try:
        created = state.initialize_stores()
    except TypedBridgeError as exc:
        raise click.ClickException(str(exc)) from exc
    for created_path in created:
        LOGGER.info(
            "Initialized store %s",
            created_path,
            extra=core_logging.log_extra("startup", "initialize_store", result="created"),
        )

    bind_host = host or runtime_config.server.host
    bind_port = int(port or runtime_config.server.port)
    LOGGER.info(
        "Starting sandbox bridge host=%s port=%s state_dir=%s",
        bind_host,
        bind_port,
        paths.state_dir,
        extra=core_logging.log_extra("startup", "bridge_start", result="started"),
    )
    uvicorn.run(build_app(state), host=bind_host, port=bind_port, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
