"""Deep merge and secret splitting for sandbox configuration documents.

The main config document may only carry a sanitized view of auth profiles
(``provider`` and ``mode``). Credentials live in the secret profile store.
Updates are applied in two phases: a structural deep merge of the whole
document, then an overwrite of every authoritative subtree with a value
computed by the caller.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

AUTH_PROFILES_PATH = ("auth", "profiles")
AUTH_USAGE_STATS_PATH = ("auth", "usageStats")
PROFILE_CREDENTIAL_FIELDS = ("key", "token", "access", "refresh", "apiKey")
PROFILE_MODE_ALIASES = {"": "token", "api_key": "token"}
TOKEN_ALIASED_CHANNELS = ("telegram",)
DEFAULT_PROFILE_LABEL = "default"
SECRET_STORE_VERSION = 1


def merge_deep(target: Mapping[str, Any] | None, source: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return ``target`` merged with ``source``; neither input is mutated.

    Nested mappings merge recursively, anything else in ``source`` replaces
    the value in ``target`` (lists included).
    """
    result: dict[str, Any] = copy.deepcopy(dict(target or {}))
    for key, value in (source or {}).items():
        existing = result.get(key)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            result[key] = merge_deep(existing, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def get_path(document: Mapping[str, Any] | None, path: tuple[str, ...]) -> Any:
    current: Any = document
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def set_path(document: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    current = document
    for part in path[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[path[-1]] = value


def pop_path(document: dict[str, Any], path: tuple[str, ...]) -> Any:
    parent = get_path(document, path[:-1]) if len(path) > 1 else document
    if not isinstance(parent, dict):
        return None
    return parent.pop(path[-1], None)


def merge_with_authoritative(
    base: Mapping[str, Any] | None,
    update: Mapping[str, Any] | None,
    authoritative: Mapping[tuple[str, ...], Any] | None = None,
) -> dict[str, Any]:
    merged = merge_deep(base, update)
    for path, value in (authoritative or {}).items():
        set_path(merged, tuple(path), copy.deepcopy(value))
    return merged


def normalize_profile_mode(mode: Any) -> str:
    normalized = str(mode or "").strip()
    return PROFILE_MODE_ALIASES.get(normalized, normalized)


def profile_key(provider: str, label: str = DEFAULT_PROFILE_LABEL) -> str:
    return f"{provider}:{label}"


def sanitize_profiles(profiles: Mapping[str, Any] | None) -> dict[str, dict[str, str]]:
    sanitized: dict[str, dict[str, str]] = {}
    for key, raw in (profiles or {}).items():
        if not isinstance(raw, Mapping):
            continue
        provider = str(raw.get("provider") or str(key).split(":", 1)[0])
        sanitized[str(key)] = {
            "provider": provider,
            "mode": normalize_profile_mode(raw.get("mode")),
        }
    return sanitized


def secret_profile_type(raw: Mapping[str, Any], existing: Mapping[str, Any] | None = None) -> str:
    explicit = str(raw.get("type") or "").strip()
    if explicit:
        return explicit
    if str(raw.get("mode") or "").strip() == "oauth":
        return "oauth"
    if existing and str(existing.get("type") or "").strip():
        return str(existing["type"])
    return "api_key"


def retain_credentials(
    secret_profiles: Mapping[str, Any] | None,
    profiles: Mapping[str, Any] | None,
) -> dict[str, dict[str, Any]]:
    """Fold credentials from ``profiles`` into a copy of ``secret_profiles``.

    A profile that arrives without a ``key`` keeps the credential already on
    record, so a sanitized round trip never erases a secret.
    """
    retained: dict[str, dict[str, Any]] = {
        str(key): dict(value) for key, value in (secret_profiles or {}).items() if isinstance(value, Mapping)
    }
    for key, raw in (profiles or {}).items():
        if not isinstance(raw, Mapping):
            continue
        key = str(key)
        existing = retained.get(key, {})
        entry = dict(existing)
        entry["type"] = secret_profile_type(raw, existing)
        entry["provider"] = str(raw.get("provider") or existing.get("provider") or key.split(":", 1)[0])
        entry.pop("mode", None)
        new_key = raw.get("key")
        if isinstance(new_key, str) and new_key:
            entry["key"] = new_key
        retained[key] = entry
    return retained


def alias_channel_tokens(update: dict[str, Any]) -> dict[str, Any]:
    """Map ``accounts.<name>.token`` to ``botToken`` for bot channels, in place."""
    channels = update.get("channels")
    if not isinstance(channels, dict):
        return update
    for channel_name in TOKEN_ALIASED_CHANNELS:
        channel = channels.get(channel_name)
        if not isinstance(channel, dict):
            continue
        accounts = channel.get("accounts")
        if not isinstance(accounts, dict):
            continue
        for account in accounts.values():
            if not isinstance(account, dict) or "token" not in account:
                continue
            token = account.pop("token")
            if token and not account.get("botToken"):
                account["botToken"] = token
    return update


def strip_profile_credentials(document: dict[str, Any]) -> dict[str, Any]:
    profiles = get_path(document, AUTH_PROFILES_PATH)
    if not isinstance(profiles, dict):
        return document
    for profile in profiles.values():
        if isinstance(profile, dict):
            for field in PROFILE_CREDENTIAL_FIELDS:
                profile.pop(field, None)
    return document


def prepare_config_update(
    current: Mapping[str, Any] | None,
    update: Mapping[str, Any],
    secret_profiles: Mapping[str, Any] | None,
) -> tuple[dict[str, Any], dict[str, dict[str, Any]] | None]:
    """Compute the next main config and, when profiles changed, the next secret profiles.

    Returns ``(merged_config, retained_secret_profiles)``; the second item is
    ``None`` when the update carries no ``auth.profiles``.
    """
    pending = copy.deepcopy(dict(update))
    alias_channel_tokens(pending)
    incoming_profiles = pop_path(pending, AUTH_PROFILES_PATH)
    pop_path(pending, AUTH_USAGE_STATS_PATH)

    authoritative: dict[tuple[str, ...], Any] = {}
    retained: dict[str, dict[str, Any]] | None = None
    if isinstance(incoming_profiles, Mapping):
        retained = retain_credentials(secret_profiles, incoming_profiles)
        authoritative[AUTH_PROFILES_PATH] = sanitize_profiles(incoming_profiles)

    merged = merge_with_authoritative(current, pending, authoritative)
    strip_profile_credentials(merged)
    return merged, retained


def display_config(main_config: Mapping[str, Any] | None, secret_profiles: Mapping[str, Any] | None) -> dict[str, Any]:
    """Main config with secret-store profiles folded in, credentials included."""
    view = copy.deepcopy(dict(main_config or {}))
    if not secret_profiles:
        return view
    profiles = get_path(view, AUTH_PROFILES_PATH)
    merged_profiles: dict[str, Any] = dict(profiles) if isinstance(profiles, Mapping) else {}
    for key, secret in secret_profiles.items():
        if not isinstance(secret, Mapping):
            continue
        existing = merged_profiles.get(key)
        entry = dict(existing) if isinstance(existing, Mapping) else {}
        entry.update(copy.deepcopy(dict(secret)))
        entry.setdefault("mode", normalize_profile_mode(entry.get("type")))
        merged_profiles[str(key)] = entry
    set_path(view, AUTH_PROFILES_PATH, merged_profiles)
    return view


def empty_secret_store() -> dict[str, Any]:
    return {"version": SECRET_STORE_VERSION, "profiles": {}}


__all__ = [
    "AUTH_PROFILES_PATH",
    "alias_channel_tokens",
    "display_config",
    "empty_secret_store",
    "get_path",
    "merge_deep",
    "merge_with_authoritative",
    "normalize_profile_mode",
    "prepare_config_update",
    "profile_key",
    "retain_credentials",
    "sanitize_profiles",
    "set_path",
    "strip_profile_credentials",
]
