from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from bridge_core import logging as core_logging
from bridge_core.config import (
    RELOAD_STRATEGY_HOT,
    RELOAD_STRATEGY_RESTART,
    BridgeRuntimeConfig,
    load_bridge_runtime_config,
)
from bridge_core.errors import ConfigError, TypedBridgeError
from bridge_core.paths import resolve_sandbox_paths
from bridge_orchestrator.client import BridgeClient
from bridge_orchestrator.container import DockerCliRuntime
from bridge_orchestrator.legacy import LegacyExecPath
from bridge_orchestrator.lifecycle import LifecycleCoordinator, SetupReport
from bridge_orchestrator.service import SandboxControlService

LOGGER = logging.getLogger("bridge_orchestrator")
CONFIG_ENV_VAR = "BRIDGECTL_CONFIG"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")


@dataclass
class CliContext:
    service: SandboxControlService
    lifecycle: LifecycleCoordinator


def build_context(runtime_config: BridgeRuntimeConfig, *, network: str | None = None) -> CliContext:
    bridge = runtime_config.bridge
    runtime = DockerCliRuntime(
        docker_binary=bridge.docker_binary,
        network=network,
        bridge_port=bridge.port,
        command_timeout_seconds=bridge.command_timeout_seconds,
    )
    client = BridgeClient(
        runtime=runtime,
        bridge_port=bridge.port,
        timeout_seconds=bridge.timeout_seconds,
        command_timeout_seconds=bridge.command_timeout_seconds,
        max_attempts=bridge.max_attempts,
        retry_delays_seconds=bridge.retry_delays_seconds,
    )
    legacy = LegacyExecPath(
        runtime=runtime,
        paths=resolve_sandbox_paths(runtime_config.paths),
        cli_binary=runtime_config.cli.binary,
        owner=runtime_config.lifecycle.owner,
        exec_timeout_seconds=bridge.command_timeout_seconds,
    )
    return CliContext(
        service=SandboxControlService(client=client, legacy=legacy),
        lifecycle=LifecycleCoordinator(
            runtime=runtime, client=client, legacy=legacy, config=runtime_config.lifecycle
        ),
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


def _load_json_argument(raw: str, *, label: str) -> dict[str, Any]:
    source = raw
    if raw.startswith("@"):
        try:
            source = Path(raw[1:]).read_text(encoding="utf-8")
        except OSError as exc:
            raise click.BadParameter(f"unable to read {raw[1:]}: {exc}", param_hint=label) from exc
    try:
        parsed = json.loads(source)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}", param_hint=label) from exc
    if not isinstance(parsed, dict):
        raise click.BadParameter("expected a JSON object", param_hint=label)
    return parsed


def _run(operation: Any) -> None:
    try:
        result = operation()
    except TypedBridgeError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc}") from exc
    _echo_json(result)


def _report_setup(report: SetupReport) -> None:
    _echo_json(report.to_payload())
    if not report.ok:
        raise click.ClickException("; ".join(report.errors) or "post-start setup failed")


@click.group(help="Drive sandbox bridges from the orchestrator side.")
@click.option(
    "--config-file",
    envvar=CONFIG_ENV_VAR,
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help=f"Bridge TOML config (also read from {CONFIG_ENV_VAR}).",
)
@click.option("--network", default=None, help="Docker network whose address is preferred for bridge calls.")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    show_default="config logging.level or info",
)
@click.pass_context
def main(ctx: click.Context, config_file: Path | None, network: str | None, log_level: str | None) -> None:
    try:
        runtime_config = load_bridge_runtime_config(config_file)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    level = core_logging.normalize_log_level(log_level or runtime_config.logging.level)
    core_logging.configure_structured_logger(LOGGER, level=level)
    core_logging.configure_domain_log_levels(
        domains=runtime_config.logging.domains, logger_prefix="bridge_orchestrator"
    )
    ctx.obj = build_context(runtime_config, network=network)


@main.command("status")
@click.argument("container_id")
@click.option("--deep", is_flag=True, default=False, help="Include the agent CLI's own status.")
@click.pass_obj
def status_command(obj: CliContext, container_id: str, deep: bool) -> None:
    _run(lambda: obj.service.status(container_id, deep=deep))


@main.command("start")
@click.argument("container_id")
@click.option("--setup/--no-setup", default=True, show_default=True, help="Run the post-start sequence afterwards.")
@click.pass_obj
def start_command(obj: CliContext, container_id: str, setup: bool) -> None:
    """Start a stopped sandbox container."""
    try:
        started = obj.service.start(container_id)
    except TypedBridgeError as exc:
        raise click.ClickException(f"{exc.error_code}: {exc}") from exc
    if not setup:
        _echo_json(started)
        return
    _report_setup(obj.lifecycle.post_start_setup(container_id, config_update=None, auth_profiles=None))


@main.command("stop")
@click.argument("container_id")
@click.pass_obj
def stop_command(obj: CliContext, container_id: str) -> None:
    _run(lambda: obj.service.stop(container_id))


@main.command("config-get")
@click.argument("container_id")
@click.pass_obj
def config_get_command(obj: CliContext, container_id: str) -> None:
    _run(lambda: obj.service.get_config(container_id))


@main.command("config-push")
@click.argument("container_id")
@click.argument("update_json")
@click.option("--no-reload", is_flag=True, default=False, help="Persist without reloading the agent.")
@click.option(
    "--strategy",
    type=click.Choice((RELOAD_STRATEGY_RESTART, RELOAD_STRATEGY_HOT)),
    default=RELOAD_STRATEGY_RESTART,
    show_default=True,
)
@click.pass_obj
def config_push_command(obj: CliContext, container_id: str, update_json: str, no_reload: bool, strategy: str) -> None:
    """Merge UPDATE_JSON (inline or @file) into the sandbox config."""
    update = _load_json_argument(update_json, label="UPDATE_JSON")
    _run(lambda: obj.service.update_config(container_id, update, reload=not no_reload, strategy=strategy))


@main.command("command", context_settings={"ignore_unknown_options": True})
@click.argument("container_id")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_obj
def command_command(obj: CliContext, container_id: str, args: tuple[str, ...]) -> None:
    if not args:
        raise click.UsageError("at least one CLI argument is required")
    _run(lambda: obj.service.run_command(container_id, list(args)))


@main.command("login")
@click.argument("container_id")
@click.argument("provider")
@click.pass_obj
def login_command(obj: CliContext, container_id: str, provider: str) -> None:
    _run(lambda: {"url": obj.service.start_login(container_id, provider)})


@main.command("callback")
@click.argument("container_id")
@click.argument("provider")
@click.argument("callback_url")
@click.pass_obj
def callback_command(obj: CliContext, container_id: str, provider: str, callback_url: str) -> None:
    _run(lambda: {"message": obj.service.submit_callback(container_id, provider, callback_url)})


@main.command("setup")
@click.argument("container_id")
@click.option("--config-json", default=None, help="Config update to inject (inline or @file).")
@click.option("--auth-json", default=None, help="auth.profiles entries to inject (inline or @file).")
@click.pass_obj
def setup_command(obj: CliContext, container_id: str, config_json: str | None, auth_json: str | None) -> None:
    """Run the post-start sequence against a freshly started sandbox."""
    config_update = _load_json_argument(config_json, label="--config-json") if config_json else None
    auth_profiles = _load_json_argument(auth_json, label="--auth-json") if auth_json else None
    _report_setup(
        obj.lifecycle.post_start_setup(container_id, config_update=config_update, auth_profiles=auth_profiles)
    )


if __name__ == "__main__":
    main()
