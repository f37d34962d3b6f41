from __future__ import annotations

import copy
import logging
import time
from collections.abc import Mapping
from threading import Lock
from typing import Any

from bridge_core.errors import InvalidRequestError
from bridge_core.logging import log_extra
from bridge_core.merge import (
    AUTH_PROFILES_PATH,
    display_config,
    get_path,
    merge_deep,
    prepare_config_update,
    profile_key,
    retain_credentials,
    sanitize_profiles,
)
from bridge_core.shared import elapsed_ms
from bridge_core.validation import PRIMARY_MODEL_PATH, normalize_primary_model
from sandbox_bridge.store.config_store import JsonDocumentStore

LOGGER = logging.getLogger("sandbox_bridge.config")


def _telegram_token_state(config: Mapping[str, Any]) -> str:
    telegram = get_path(config, ("channels", "telegram"))
    if not isinstance(telegram, Mapping):
        return "MISSING"
    if telegram.get("botToken"):
        return "SET"
    accounts = telegram.get("accounts")
    if isinstance(accounts, Mapping):
        for account in accounts.values():
            if isinstance(account, Mapping) and account.get("botToken"):
                return "SET"
    return "MISSING"


class ConfigService:
    """Read-modify-write access to the main config and the secret profile store."""

    def __init__(
        self,
        *,
        main_store: JsonDocumentStore,
        secret_store: JsonDocumentStore,
        lock: Lock | None = None,
    ) -> None:
        self._main_store = main_store
        self._secret_store = secret_store
        self._update_lock = lock or Lock()

    def ensure_initialized(self) -> list[str]:
        created = []
        for store in (self._main_store, self._secret_store):
            if store.ensure_initialized():
                created.append(str(store.path))
        return created

    def secret_profiles(self) -> dict[str, Any]:
        profiles = self._secret_store.load().get("profiles")
        return dict(profiles) if isinstance(profiles, Mapping) else {}

    def status_summary(self) -> dict[str, Any]:
        config = self._main_store.load()
        main_profiles = get_path(config, AUTH_PROFILES_PATH)
        profile_keys = set(self.secret_profiles())
        if isinstance(main_profiles, Mapping):
            profile_keys.update(str(key) for key in main_profiles)
        return {
            "telegram": {
                "enabled": bool(get_path(config, ("channels", "telegram", "enabled"))),
                "token": _telegram_token_state(config),
            },
            "auth_profiles": sorted(profile_keys),
            "gateway_port": get_path(config, ("gateway", "port")),
            "primary_model": get_path(config, PRIMARY_MODEL_PATH),
        }

    def config_view(self) -> dict[str, Any]:
        return display_config(self._main_store.load(), self.secret_profiles())

    def update_config(self, update: Any) -> dict[str, Any]:
        if not isinstance(update, Mapping):
            raise InvalidRequestError("Config update must be a JSON object.")
        started_at = time.monotonic()
        pending = copy.deepcopy(dict(update))
        if normalize_primary_model(pending):
            LOGGER.warning(
                "Primary model has no provider prefix; using the default model.",
                extra=log_extra("config", "update", result="model_replaced"),
            )

        with self._update_lock:
            secret_document = self._secret_store.load(preserve_corrupt=True)
            merged, retained = prepare_config_update(
                self._main_store.load(preserve_corrupt=True),
                pending,
                secret_document.get("profiles"),
            )
            if retained is not None:
                secret_document["profiles"] = retained
                secret_document.setdefault("version", 1)
                self._secret_store.save(secret_document)
            self._main_store.save(merged)

        incoming_profiles = get_path(pending, AUTH_PROFILES_PATH)
        changed_profiles = sorted(str(k) for k in incoming_profiles) if isinstance(incoming_profiles, Mapping) else []
        LOGGER.info(
            "Config updated.",
            extra=log_extra("config", "update", result="ok", duration_ms=elapsed_ms(started_at)),
        )
        return {"message": "Config updated", "profiles": changed_profiles}

    def add_auth(self, provider: Any, key: Any, mode: Any = None) -> dict[str, Any]:
        provider_name = str(provider or "").strip()
        secret = str(key or "").strip() if isinstance(key, str) else ""
        if not provider_name or not secret:
            raise InvalidRequestError("Missing provider or key")
        profile_id = profile_key(provider_name)
        incoming = {profile_id: {"provider": provider_name, "mode": str(mode or "api_key"), "key": secret}}

        with self._update_lock:
            secret_document = self._secret_store.load(preserve_corrupt=True)
            secret_document["profiles"] = retain_credentials(secret_document.get("profiles"), incoming)
            secret_document.setdefault("version", 1)
            self._secret_store.save(secret_document)
            merged = merge_deep(
                self._main_store.load(preserve_corrupt=True),
                {"auth": {"profiles": sanitize_profiles(incoming)}},
            )
            self._main_store.save(merged)

        LOGGER.info(
            "Auth profile stored.",
            extra=log_extra("config", "add_auth", provider=provider_name, result="ok"),
        )
        return {"message": f"Auth profile {profile_id} added", "profile": profile_id}
