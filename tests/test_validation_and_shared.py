from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from bridge_core.errors import InvalidRequestError
from bridge_core.shared import coerce_bool, contains_shell_meta, extract_json, redact_secrets
from bridge_core.validation import (
    DEFAULT_PRIMARY_MODEL,
    default_main_config,
    normalize_primary_model,
    validate_cli_args,
    validate_config_update,
    with_safe_primary_model,
)


def test_default_main_config_has_first_boot_shape() -> None:
    config = default_main_config()

    assert config["agents"]["defaults"]["model"]["primary"] == DEFAULT_PRIMARY_MODEL
    assert config["channels"]["telegram"]["enabled"] is False
    assert config["gateway"]["port"] == 18789
    assert config["agents"]["list"][0]["id"] == "main"


def test_primary_model_without_provider_prefix_is_replaced() -> None:
    document = {"agents": {"defaults": {"model": {"primary": "gemini-pro"}}}}

    assert normalize_primary_model(document) is True
    assert document["agents"]["defaults"]["model"]["primary"] == DEFAULT_PRIMARY_MODEL

    valid = {"agents": {"defaults": {"model": {"primary": "openai/gpt-4o"}}}}
    assert normalize_primary_model(valid) is False
    assert normalize_primary_model({}) is False


def test_with_safe_primary_model_does_not_mutate_input() -> None:
    update = {"agents": {"defaults": {"model": {"primary": "bare"}}}}

    guarded = with_safe_primary_model(update)

    assert guarded["agents"]["defaults"]["model"]["primary"] == DEFAULT_PRIMARY_MODEL
    assert update["agents"]["defaults"]["model"]["primary"] == "bare"


def test_validate_config_update_rejects_short_bot_tokens_and_unknown_providers() -> None:
    with pytest.raises(InvalidRequestError):
        validate_config_update({"channels": {"telegram": {"accounts": {"default": {"botToken": "short"}}}}})
    with pytest.raises(InvalidRequestError):
        validate_config_update({"channels": {"telegram": {"accounts": {"default": {"token": "123"}}}}})
    with pytest.raises(InvalidRequestError):
        validate_config_update({"auth": {"profiles": {"x:default": {"provider": "made-up"}}}})

    validate_config_update(
        {
            "channels": {"telegram": {"accounts": {"default": {"botToken": "123456789:ABCDEF"}}}},
            "auth": {"profiles": {"openai:default": {"provider": "OpenAI"}}},
        }
    )


def test_validate_cli_args_allowlist_and_shell_metacharacters() -> None:
    assert validate_cli_args(["models", "list", "--json"]) == ["models", "list", "--json"]
    with pytest.raises(InvalidRequestError):
        validate_cli_args(["rm", "-rf", "/"])
    with pytest.raises(InvalidRequestError):
        validate_cli_args([])
    with pytest.raises(InvalidRequestError):
        validate_cli_args(["status", "$(whoami)"])
    with pytest.raises(InvalidRequestError):
        validate_cli_args("status")


def test_extract_json_finds_first_balanced_document_in_noise() -> None:
    assert extract_json('warning: x\n{"a": {"b": [1, 2]}}\ntrailer') == {"a": {"b": [1, 2]}}
    assert extract_json("prefix [1, 2] suffix") == [1, 2]
    assert extract_json("{broken {\"ok\": true}") == {"ok": True}
    assert extract_json("no json here") is None
    assert extract_json("") is None


def test_redact_secrets_masks_assignments_and_provider_keys() -> None:
    redacted = redact_secrets("token=abc123 key: sk-abcdef123456 user=bob")

    assert "abc123" not in redacted
    assert "sk-abcdef123456" not in redacted
    assert "user=bob" in redacted
    assert redact_secrets("") == ""


def test_redact_secrets_covers_json_formatted_credentials() -> None:
    document = '{"key": "AIzaSyD-SECRETVALUE", "botToken": "123456:ABCDEF", "refresh_token": "rt-1", "provider": "google"}'

    redacted = redact_secrets(document)

    assert "AIzaSyD-SECRETVALUE" not in redacted
    assert "123456:ABCDEF" not in redacted
    assert "rt-1" not in redacted
    assert '"key": "[redacted]"' in redacted
    assert '"provider": "google"' in redacted


def test_small_helpers() -> None:
    assert contains_shell_meta("a;b") is True
    assert contains_shell_meta("plain-arg") is False
    assert coerce_bool("false", default=True) is False
    assert coerce_bool("YES") is True
    assert coerce_bool(None, default=True) is True
    assert coerce_bool("maybe", default=False) is False
