from __future__ import annotations

from .config import (
    BridgeRuntimeConfig,
    RELOAD_STRATEGY_CHOICES,
    RELOAD_STRATEGY_HOT,
    RELOAD_STRATEGY_RESTART,
    load_bridge_runtime_config,
    load_bridge_runtime_config_dict,
    parse_reload_strategy,
)
from .errors import (
    BridgeRequestError,
    BridgeUnreachableError,
    CommandFailedError,
    CommandTimeoutError,
    ConfigError,
    ConfigStoreError,
    ContainerRuntimeError,
    InvalidRequestError,
    OAuthFlowNotFoundError,
    OAuthLoginError,
    OAuthTimeoutError,
    SessionNotFoundError,
    TypedBridgeError,
)
from .paths import SandboxPaths, default_sandbox_paths, resolve_sandbox_paths

__all__ = [
    "BridgeRequestError",
    "BridgeRuntimeConfig",
    "BridgeUnreachableError",
    "CommandFailedError",
    "CommandTimeoutError",
    "ConfigError",
    "ConfigStoreError",
    "ContainerRuntimeError",
    "InvalidRequestError",
    "OAuthFlowNotFoundError",
    "OAuthLoginError",
    "OAuthTimeoutError",
    "RELOAD_STRATEGY_CHOICES",
    "RELOAD_STRATEGY_HOT",
    "RELOAD_STRATEGY_RESTART",
    "SandboxPaths",
    "SessionNotFoundError",
    "TypedBridgeError",
    "default_sandbox_paths",
    "load_bridge_runtime_config",
    "load_bridge_runtime_config_dict",
    "parse_reload_strategy",
    "resolve_sandbox_paths",
]
