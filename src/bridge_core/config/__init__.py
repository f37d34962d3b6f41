from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from bridge_core.errors import ConfigError


_SECTION_KEYS = ("paths", "server", "cli", "oauth", "reload", "logging", "bridge", "lifecycle")
RELOAD_STRATEGY_RESTART = "restart"
RELOAD_STRATEGY_HOT = "hot-reload"
RELOAD_STRATEGY_CHOICES = (RELOAD_STRATEGY_RESTART, RELOAD_STRATEGY_HOT)
DEFAULT_STATE_DIR = "/home/node/.openclaw"
DEFAULT_BRIDGE_PORT = 4444
DEFAULT_CLI_BINARY = "openclaw"


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _pop_str(raw: dict[str, Any], key: str, default: str, *, label: str) -> str:
    value = raw.pop(key, None)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{label}.{key} must be a string.")
    return value


def _pop_int(raw: dict[str, Any], key: str, default: int, *, label: str, minimum: int = 0) -> int:
    value = raw.pop(key, None)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label}.{key} must be an integer.")
    if value < minimum:
        raise ConfigError(f"{label}.{key} must be >= {minimum}.")
    return value


def _pop_float(raw: dict[str, Any], key: str, default: float, *, label: str) -> float:
    value = raw.pop(key, None)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label}.{key} must be a number.")
    if value < 0:
        raise ConfigError(f"{label}.{key} must not be negative.")
    return float(value)


def _pop_float_list(raw: dict[str, Any], key: str, default: tuple[float, ...], *, label: str) -> tuple[float, ...]:
    value = raw.pop(key, None)
    if value is None:
        return default
    if not isinstance(value, list) or any(isinstance(item, bool) or not isinstance(item, (int, float)) for item in value):
        raise ConfigError(f"{label}.{key} must be a list of numbers.")
    return tuple(float(item) for item in value)


def _pop_str_list(raw: dict[str, Any], key: str, default: tuple[str, ...], *, label: str) -> tuple[str, ...]:
    value = raw.pop(key, None)
    if value is None:
        return default
    if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
        raise ConfigError(f"{label}.{key} must be a list of strings.")
    return tuple(value)


def parse_reload_strategy(value: object, *, label: str = "reload.default_strategy") -> str:
    if value is None:
        return RELOAD_STRATEGY_RESTART
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be one of: {', '.join(RELOAD_STRATEGY_CHOICES)}.")
    resolved = value.strip().lower()
    if resolved not in RELOAD_STRATEGY_CHOICES:
        raise ConfigError(f"{label} must be one of: {', '.join(RELOAD_STRATEGY_CHOICES)}.")
    return resolved


@dataclass(frozen=True)
class PathsConfig:
    state_dir: str = DEFAULT_STATE_DIR
    config_file: str = ""
    auth_profiles_file: str = ""
    sessions_dir: str = ""


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_BRIDGE_PORT


@dataclass(frozen=True)
class CliConfig:
    binary: str = DEFAULT_CLI_BINARY
    command_timeout_seconds: float = 30.0
    history_size: int = 20


@dataclass(frozen=True)
class OAuthConfig:
    login_timeout_seconds: float = 10.0
    callback_timeout_seconds: float = 20.0
    terminal_cols: int = 120
    terminal_rows: int = 30
    line_terminator: str = "\r"


@dataclass(frozen=True)
class ReloadConfig:
    default_strategy: str = RELOAD_STRATEGY_RESTART
    delay_seconds: float = 0.5


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    domains: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BridgeClientConfig:
    port: int = DEFAULT_BRIDGE_PORT
    timeout_seconds: float = 15.0
    command_timeout_seconds: float = 60.0
    max_attempts: int = 3
    retry_delays_seconds: tuple[float, ...] = (1.0, 2.0)
    docker_binary: str = "docker"


@dataclass(frozen=True)
class LifecycleConfig:
    running_poll_interval_seconds: float = 2.0
    running_poll_attempts: int = 10
    bridge_poll_interval_seconds: float = 2.0
    bridge_wait_timeout_seconds: float = 30.0
    owner: str = "node:node"
    chown_paths: tuple[str, ...] = (DEFAULT_STATE_DIR, "/tmp")


@dataclass(frozen=True)
class BridgeRuntimeConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    cli: CliConfig = field(default_factory=CliConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    reload: ReloadConfig = field(default_factory=ReloadConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    bridge: BridgeClientConfig = field(default_factory=BridgeClientConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "BridgeRuntimeConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")
        raw = dict(payload)
        extras = {k: v for k, v in raw.items() if k not in _SECTION_KEYS}
        return cls(
            paths=_parse_paths(raw),
            server=_parse_server(raw),
            cli=_parse_cli(raw),
            oauth=_parse_oauth(raw),
            reload=_parse_reload(raw),
            logging=_parse_logging(raw),
            bridge=_parse_bridge(raw),
            lifecycle=_parse_lifecycle(raw),
            extras=extras,
        )

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "BridgeRuntimeConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        return cls.from_dict(parsed)


def _parse_paths(raw_root: dict[str, Any]) -> PathsConfig:
    raw = _ensure_dict(raw_root.get("paths"), label="section 'paths'")
    return PathsConfig(
        state_dir=_pop_str(raw, "state_dir", DEFAULT_STATE_DIR, label="paths"),
        config_file=_pop_str(raw, "config_file", "", label="paths"),
        auth_profiles_file=_pop_str(raw, "auth_profiles_file", "", label="paths"),
        sessions_dir=_pop_str(raw, "sessions_dir", "", label="paths"),
    )


def _parse_server(raw_root: dict[str, Any]) -> ServerConfig:
    raw = _ensure_dict(raw_root.get("server"), label="section 'server'")
    return ServerConfig(
        host=_pop_str(raw, "host", "0.0.0.0", label="server"),
        port=_pop_int(raw, "port", DEFAULT_BRIDGE_PORT, label="server", minimum=1),
    )


def _parse_cli(raw_root: dict[str, Any]) -> CliConfig:
    raw = _ensure_dict(raw_root.get("cli"), label="section 'cli'")
    return CliConfig(
        binary=_pop_str(raw, "binary", DEFAULT_CLI_BINARY, label="cli"),
        command_timeout_seconds=_pop_float(raw, "command_timeout_seconds", 30.0, label="cli"),
        history_size=_pop_int(raw, "history_size", 20, label="cli", minimum=1),
    )


def _parse_oauth(raw_root: dict[str, Any]) -> OAuthConfig:
    raw = _ensure_dict(raw_root.get("oauth"), label="section 'oauth'")
    return OAuthConfig(
        login_timeout_seconds=_pop_float(raw, "login_timeout_seconds", 10.0, label="oauth"),
        callback_timeout_seconds=_pop_float(raw, "callback_timeout_seconds", 20.0, label="oauth"),
        terminal_cols=_pop_int(raw, "terminal_cols", 120, label="oauth", minimum=1),
        terminal_rows=_pop_int(raw, "terminal_rows", 30, label="oauth", minimum=1),
        line_terminator=_pop_str(raw, "line_terminator", "\r", label="oauth"),
    )


def _parse_reload(raw_root: dict[str, Any]) -> ReloadConfig:
    raw = _ensure_dict(raw_root.get("reload"), label="section 'reload'")
    return ReloadConfig(
        default_strategy=parse_reload_strategy(raw.pop("default_strategy", None)),
        delay_seconds=_pop_float(raw, "delay_seconds", 0.5, label="reload"),
    )


def _parse_logging(raw_root: dict[str, Any]) -> LoggingConfig:
    raw = _ensure_dict(raw_root.get("logging"), label="section 'logging'")
    return LoggingConfig(
        level=_pop_str(raw, "level", "info", label="logging"),
        domains=_ensure_dict(raw.pop("domains", None), label="section 'logging.domains'"),
    )


def _parse_bridge(raw_root: dict[str, Any]) -> BridgeClientConfig:
    raw = _ensure_dict(raw_root.get("bridge"), label="section 'bridge'")
    return BridgeClientConfig(
        port=_pop_int(raw, "port", DEFAULT_BRIDGE_PORT, label="bridge", minimum=1),
        timeout_seconds=_pop_float(raw, "timeout_seconds", 15.0, label="bridge"),
        command_timeout_seconds=_pop_float(raw, "command_timeout_seconds", 60.0, label="bridge"),
        max_attempts=_pop_int(raw, "max_attempts", 3, label="bridge", minimum=1),
        retry_delays_seconds=_pop_float_list(raw, "retry_delays_seconds", (1.0, 2.0), label="bridge"),
        docker_binary=_pop_str(raw, "docker_binary", "docker", label="bridge"),
    )


def _parse_lifecycle(raw_root: dict[str, Any]) -> LifecycleConfig:
    raw = _ensure_dict(raw_root.get("lifecycle"), label="section 'lifecycle'")
    return LifecycleConfig(
        running_poll_interval_seconds=_pop_float(raw, "running_poll_interval_seconds", 2.0, label="lifecycle"),
        running_poll_attempts=_pop_int(raw, "running_poll_attempts", 10, label="lifecycle", minimum=1),
        bridge_poll_interval_seconds=_pop_float(raw, "bridge_poll_interval_seconds", 2.0, label="lifecycle"),
        bridge_wait_timeout_seconds=_pop_float(raw, "bridge_wait_timeout_seconds", 30.0, label="lifecycle"),
        owner=_pop_str(raw, "owner", "node:node", label="lifecycle"),
        chown_paths=_pop_str_list(raw, "chown_paths", (DEFAULT_STATE_DIR, "/tmp"), label="lifecycle"),
    )


def load_bridge_runtime_config(path: str | Path | None = None) -> BridgeRuntimeConfig:
    if path is None or not str(path).strip():
        return BridgeRuntimeConfig()
    return BridgeRuntimeConfig.from_toml_path(path)


def load_bridge_runtime_config_dict(payload: Mapping[str, Any] | dict[str, Any]) -> BridgeRuntimeConfig:
    return BridgeRuntimeConfig.from_dict(payload)


__all__ = [
    "BridgeClientConfig",
    "BridgeRuntimeConfig",
    "CliConfig",
    "DEFAULT_BRIDGE_PORT",
    "DEFAULT_CLI_BINARY",
    "DEFAULT_STATE_DIR",
    "LifecycleConfig",
    "LoggingConfig",
    "OAuthConfig",
    "PathsConfig",
    "RELOAD_STRATEGY_CHOICES",
    "RELOAD_STRATEGY_HOT",
    "RELOAD_STRATEGY_RESTART",
    "ReloadConfig",
    "ServerConfig",
    "load_bridge_runtime_config",
    "load_bridge_runtime_config_dict",
    "parse_reload_strategy",
]
