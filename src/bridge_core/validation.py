"""Defaults and payload checks shared by the bridge server and the orchestrator."""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from typing import Any

from bridge_core.errors import InvalidRequestError
from bridge_core.merge import AUTH_PROFILES_PATH, get_path, set_path
from bridge_core.shared import contains_shell_meta, iso_now

DEFAULT_PRIMARY_MODEL = "google/gemini-3-flash-preview"
DEFAULT_WORKSPACE = "/home/node/workspace"
DEFAULT_GATEWAY_PORT = 18789
PRIMARY_MODEL_PATH = ("agents", "defaults", "model", "primary")
MIN_BOT_TOKEN_LENGTH = 10

KNOWN_PROVIDERS = frozenset(
    {
        "openai",
        "anthropic",
        "google",
        "google-antigravity",
        "groq",
        "deepseek",
        "openrouter",
        "xai",
        "together",
        "ollama",
        "mistral",
        "cohere",
        "fireworks",
    }
)

ALLOWED_CLI_COMMANDS = frozenset(
    {
        "models",
        "agents",
        "session",
        "sessions",
        "config",
        "status",
        "auth",
        "help",
        "version",
        "skills",
        "cron",
        "channels",
        "message",
        "pairing",
        "doctor",
        "health",
        "logs",
        "memory",
        "hooks",
        "plugins",
        "security",
        "system",
        "nodes",
    }
)


def default_main_config(*, primary_model: str = DEFAULT_PRIMARY_MODEL, cli_version: str = "unknown") -> dict[str, Any]:
    return {
        "meta": {"lastTouchedVersion": cli_version, "lastTouchedAt": iso_now()},
        "agents": {
            "defaults": {
                "model": {"primary": primary_model},
                "models": {primary_model: {}},
                "workspace": DEFAULT_WORKSPACE,
                "compaction": {"mode": "safeguard"},
                "maxConcurrent": 2,
                "subagents": {"maxConcurrent": 4},
            },
            "list": [
                {
                    "id": "main",
                    "default": True,
                    "workspace": DEFAULT_WORKSPACE,
                    "model": primary_model,
                    "identity": {"name": "Agent"},
                }
            ],
        },
        "bindings": [{"agentId": "main", "match": {"channel": "telegram"}}],
        "commands": {"native": "auto", "nativeSkills": "auto"},
        "channels": {
            "telegram": {
                "enabled": False,
                "dmPolicy": "open",
                "groupPolicy": "allowlist",
                "allowFrom": ["*"],
                "streamMode": "partial",
            }
        },
        "gateway": {"port": DEFAULT_GATEWAY_PORT, "mode": "local", "auth": {"mode": "token"}},
        "plugins": {"entries": {"aiagenz-bridge": {"enabled": True}, "telegram": {"enabled": True}}},
    }


def is_valid_model_ref(model: Any) -> bool:
    text = str(model or "").strip()
    provider, sep, name = text.partition("/")
    return bool(sep and provider and name)


def normalize_primary_model(document: dict[str, Any], *, fallback: str = DEFAULT_PRIMARY_MODEL) -> bool:
    """Replace a primary model without a ``provider/`` prefix, in place. Returns True when replaced."""
    model = get_path(document, PRIMARY_MODEL_PATH)
    if model is None or is_valid_model_ref(model):
        return False
    set_path(document, PRIMARY_MODEL_PATH, fallback)
    return True


def validate_config_update(update: Mapping[str, Any]) -> None:
    if not isinstance(update, Mapping):
        raise InvalidRequestError("Config update must be a JSON object.")
    accounts = get_path(update, ("channels", "telegram", "accounts"))
    if isinstance(accounts, Mapping):
        for name, account in accounts.items():
            if not isinstance(account, Mapping):
                continue
            token = account.get("botToken") or account.get("token")
            if isinstance(token, str) and 0 < len(token) < MIN_BOT_TOKEN_LENGTH:
                raise InvalidRequestError(
                    f"telegram token for account '{name}' is too short (min {MIN_BOT_TOKEN_LENGTH} chars)"
                )
    profiles = get_path(update, AUTH_PROFILES_PATH)
    if isinstance(profiles, Mapping):
        for key, profile in profiles.items():
            if not isinstance(profile, Mapping):
                continue
            provider = profile.get("provider")
            if isinstance(provider, str) and provider.lower() not in KNOWN_PROVIDERS:
                raise InvalidRequestError(f"unknown provider '{provider}' in profile '{key}'")


def validate_cli_args(args: Sequence[Any]) -> list[str]:
    if isinstance(args, (str, bytes)) or not isinstance(args, Sequence):
        raise InvalidRequestError("args must be a list of strings.")
    normalized = [str(arg) for arg in args]
    if not normalized or normalized[0] not in ALLOWED_CLI_COMMANDS:
        raise InvalidRequestError("command not allowed or empty")
    for arg in normalized:
        if contains_shell_meta(arg):
            raise InvalidRequestError("argument contains disallowed characters")
    return normalized


def with_safe_primary_model(update: Mapping[str, Any]) -> dict[str, Any]:
    guarded = copy.deepcopy(dict(update))
    normalize_primary_model(guarded)
    return guarded
