from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from bridge_core.merge import (
    alias_channel_tokens,
    display_config,
    merge_deep,
    merge_with_authoritative,
    normalize_profile_mode,
    prepare_config_update,
    retain_credentials,
    sanitize_profiles,
)


def test_merge_deep_recurses_into_mappings_and_replaces_lists() -> None:
    target = {"a": {"b": 1, "c": [1, 2]}, "keep": True}
    source = {"a": {"c": [3], "d": {"e": "x"}}}

    merged = merge_deep(target, source)

    assert merged == {"a": {"b": 1, "c": [3], "d": {"e": "x"}}, "keep": True}
    assert target == {"a": {"b": 1, "c": [1, 2]}, "keep": True}


def test_merge_deep_scalar_replaces_mapping() -> None:
    assert merge_deep({"a": {"b": 1}}, {"a": "flat"}) == {"a": "flat"}


def test_merge_with_authoritative_overwrites_subtree_instead_of_merging() -> None:
    base = {"auth": {"profiles": {"old:default": {"provider": "old", "mode": "token"}}}, "x": 1}

    merged = merge_with_authoritative(
        base,
        {"x": 2},
        {("auth", "profiles"): {"new:default": {"provider": "new", "mode": "oauth"}}},
    )

    assert merged["x"] == 2
    assert merged["auth"]["profiles"] == {"new:default": {"provider": "new", "mode": "oauth"}}


def test_normalize_profile_mode_aliases_empty_and_api_key_to_token() -> None:
    assert normalize_profile_mode(None) == "token"
    assert normalize_profile_mode("api_key") == "token"
    assert normalize_profile_mode("oauth") == "oauth"


def test_sanitize_profiles_keeps_only_provider_and_mode() -> None:
    sanitized = sanitize_profiles(
        {
            "openai:default": {"provider": "openai", "mode": "api_key", "key": "sk-secret-value"},
            "google:work": {"mode": "oauth", "access": "tok", "refresh": "ref"},
            "broken": "not-a-profile",
        }
    )

    assert sanitized == {
        "openai:default": {"provider": "openai", "mode": "token"},
        "google:work": {"provider": "google", "mode": "oauth"},
    }


def test_retain_credentials_keeps_existing_key_when_update_omits_it() -> None:
    existing = {"openai:default": {"type": "api_key", "provider": "openai", "key": "sk-original"}}

    retained = retain_credentials(existing, {"openai:default": {"provider": "openai", "mode": "token"}})

    assert retained["openai:default"]["key"] == "sk-original"
    assert retained["openai:default"]["type"] == "api_key"
    assert "mode" not in retained["openai:default"]


def test_retain_credentials_preserves_oauth_fields_and_type() -> None:
    existing = {
        "google:default": {"type": "oauth", "provider": "google", "access": "a", "refresh": "r", "expires": 99}
    }

    retained = retain_credentials(existing, {"google:default": {"provider": "google"}})

    assert retained["google:default"] == {
        "type": "oauth",
        "provider": "google",
        "access": "a",
        "refresh": "r",
        "expires": 99,
    }


def test_retain_credentials_explicit_type_and_oauth_mode() -> None:
    retained = retain_credentials(
        {},
        {
            "a:default": {"provider": "a", "type": "token", "key": "k1"},
            "b:default": {"provider": "b", "mode": "oauth"},
            "c:default": {"provider": "c", "key": "k3"},
        },
    )

    assert retained["a:default"]["type"] == "token"
    assert retained["b:default"]["type"] == "oauth"
    assert retained["c:default"] == {"type": "api_key", "provider": "c", "key": "k3"}


def test_alias_channel_tokens_maps_token_to_bot_token_for_every_account() -> None:
    update = {
        "channels": {
            "telegram": {
                "accounts": {
                    "default": {"token": "123456:abcdef"},
                    "second": {"token": "999:zzz", "botToken": "kept"},
                }
            },
            "slack": {"accounts": {"default": {"token": "xoxb"}}},
        }
    }

    alias_channel_tokens(update)

    accounts = update["channels"]["telegram"]["accounts"]
    assert accounts["default"] == {"botToken": "123456:abcdef"}
    assert accounts["second"] == {"botToken": "kept"}
    assert update["channels"]["slack"]["accounts"]["default"] == {"token": "xoxb"}


def test_prepare_config_update_splits_secrets_from_main_config() -> None:
    current = {"gateway": {"port": 18789}, "auth": {"usageStats": {"calls": 3}}}
    update = {
        "gateway": {"mode": "local"},
        "auth": {
            "profiles": {"openai:default": {"provider": "openai", "mode": "api_key", "key": "sk-live-1234"}},
            "usageStats": {"calls": 0},
        },
    }

    merged, retained = prepare_config_update(current, update, {})

    assert merged["gateway"] == {"port": 18789, "mode": "local"}
    assert merged["auth"]["profiles"] == {"openai:default": {"provider": "openai", "mode": "token"}}
    assert merged["auth"]["usageStats"] == {"calls": 3}
    assert retained == {"openai:default": {"type": "api_key", "provider": "openai", "key": "sk-live-1234"}}
    assert update["auth"]["profiles"]["openai:default"]["key"] == "sk-live-1234"


def test_prepare_config_update_without_profiles_leaves_secrets_alone() -> None:
    merged, retained = prepare_config_update({"a": 1}, {"b": 2}, {"x:default": {"key": "k"}})

    assert merged == {"a": 1, "b": 2}
    assert retained is None


def test_prepare_config_update_strips_credentials_already_in_main_config() -> None:
    current = {"auth": {"profiles": {"legacy:default": {"provider": "legacy", "mode": "token", "key": "leak"}}}}

    merged, _retained = prepare_config_update(current, {"meta": {}}, {})

    assert merged["auth"]["profiles"]["legacy:default"] == {"provider": "legacy", "mode": "token"}


def test_display_config_folds_in_secret_only_profiles() -> None:
    main = {"auth": {"profiles": {"openai:default": {"provider": "openai", "mode": "token"}}}}
    secrets = {
        "openai:default": {"type": "api_key", "provider": "openai", "key": "sk-1"},
        "google:default": {"type": "oauth", "provider": "google", "access": "a"},
    }

    view = display_config(main, secrets)

    profiles = view["auth"]["profiles"]
    assert profiles["openai:default"]["key"] == "sk-1"
    assert profiles["openai:default"]["mode"] == "token"
    assert profiles["google:default"]["mode"] == "oauth"
    assert "key" not in main["auth"]["profiles"]["openai:default"]
