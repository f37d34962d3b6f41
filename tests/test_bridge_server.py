from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from bridge_core.config import BridgeRuntimeConfig
from bridge_core.errors import CommandTimeoutError, OAuthFlowNotFoundError
from bridge_core.paths import default_sandbox_paths
from sandbox_bridge import server as bridge_server
from sandbox_bridge.integrations.command_runner import CliResult
from sandbox_bridge.services.command_service import CommandService


class BridgeServerTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.paths = default_sandbox_paths(Path(tmp.name))
        self.runner = Mock(return_value=CliResult(exit_code=0, stdout='{"models": []}', stderr="", duration_ms=3))
        self.reloader = Mock()
        self.oauth = Mock()
        self.oauth.active_providers.return_value = []
        self.state = bridge_server.BridgeState(
            runtime_config=BridgeRuntimeConfig(),
            paths=self.paths,
            oauth_manager=self.oauth,
            command_service=CommandService(cli_binary="openclaw", timeout_seconds=5, runner=self.runner),
            reloader=self.reloader,
        )
        self.state.initialize_stores()
        self.client = TestClient(bridge_server.build_app(self.state))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_healthz(self) -> None:
        response = self.client.get("/healthz")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True, "data": {"status": "ok"}})

    def test_status_is_read_only_and_repeatable(self) -> None:
        before = self.paths.config_file.read_text(encoding="utf-8")

        first = self.client.get("/status").json()
        second = self.client.get("/status").json()

        self.assertTrue(first["ok"])
        self.assertEqual(first["data"]["summary"], second["data"]["summary"])
        self.assertEqual(first["data"]["summary"]["telegram"], {"enabled": False, "token": "MISSING"})
        self.assertNotIn("cli_status", first["data"])
        self.assertEqual(self.paths.config_file.read_text(encoding="utf-8"), before)
        self.runner.assert_not_called()

    def test_deep_status_includes_cli_report(self) -> None:
        payload = self.client.get("/status", params={"deep": "true"}).json()

        self.assertEqual(payload["data"]["cli_status"], {"ok": True, "data": {"models": []}})
        self.runner.assert_called_once()
        self.assertEqual(self.runner.call_args.args[0], ["openclaw", "status", "--json"])

    def test_config_update_without_reload_header_does_not_restart(self) -> None:
        response = self.client.post("/config/update", json={"gateway": {"mode": "remote"}})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["ok"], True)
        self.assertEqual(body["message"], "Config updated")
        self.assertEqual(body["data"]["reload"], "none")
        self.reloader.schedule.assert_not_called()
        stored = json.loads(self.paths.config_file.read_text(encoding="utf-8"))
        self.assertEqual(stored["gateway"]["mode"], "remote")
        self.assertEqual(stored["gateway"]["port"], 18789)

    def test_config_update_reload_headers(self) -> None:
        restart = self.client.post("/config/update", json={"a": 1}, headers={"x-reload": "true"}).json()
        hot = self.client.post(
            "/config/update", json={"a": 2}, headers={"x-reload": "true", "x-strategy": "hot-reload"}
        ).json()

        self.assertEqual(restart["data"]["reload"], "restart")
        self.assertEqual(hot["data"]["reload"], "hot-reload")
        self.reloader.schedule.assert_called_once_with()

    def test_config_update_rejects_bad_bodies(self) -> None:
        for content in (b"", b"{not json", b"[1, 2]"):
            response = self.client.post(
                "/config/update", content=content, headers={"content-type": "application/json"}
            )
            self.assertEqual(response.status_code, 400, content)
            self.assertEqual(response.json()["ok"], False)
            self.assertEqual(response.json()["error_code"], "INVALID_REQUEST")

    def test_bad_strategy_header_is_rejected_before_write(self) -> None:
        response = self.client.post("/config/update", json={"a": 1}, headers={"x-strategy": "reboot"})

        self.assertEqual(response.status_code, 400)
        stored = json.loads(self.paths.config_file.read_text(encoding="utf-8"))
        self.assertNotIn("a", stored)

    def test_config_get_shows_secret_profiles(self) -> None:
        self.client.post("/auth/add", json={"provider": "openai", "key": "sk-test-1"}, headers={"x-reload": "false"})

        profiles = self.client.get("/config").json()["data"]["auth"]["profiles"]

        self.assertEqual(profiles["openai:default"]["key"], "sk-test-1")
        self.assertNotIn("sk-test-1", self.paths.config_file.read_text(encoding="utf-8"))

    def test_auth_add_reloads_by_default_and_validates(self) -> None:
        ok = self.client.post("/auth/add", json={"provider": "openai", "key": "sk-test-1"}).json()
        missing = self.client.post("/auth/add", json={"provider": "openai"})

        self.assertEqual(ok["message"], "Auth profile openai:default added")
        self.assertEqual(ok["data"]["reload"], "restart")
        self.reloader.schedule.assert_called_once_with()
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json()["error"], "Missing provider or key")

    def test_command_success_envelope(self) -> None:
        response = self.client.post("/command", json={"args": ["models", "list", "--json"]})

        self.assertEqual(response.json(), {"ok": True, "data": {"models": []}, "stderr": "", "exit_code": 0})

    def test_command_failure_carries_process_output(self) -> None:
        self.runner.return_value = CliResult(exit_code=3, stdout="plain", stderr="bad flag", duration_ms=1)

        response = self.client.post("/command", json={"args": ["models", "--oops"]})

        self.assertEqual(response.status_code, 500)
        body = response.json()
        self.assertEqual(body["ok"], False)
        self.assertEqual(body["error_code"], "COMMAND_FAILED")
        self.assertEqual((body["code"], body["stdout"], body["stderr"]), (3, "plain", "bad flag"))

    def test_command_failure_redacts_json_credentials_in_output(self) -> None:
        self.runner.return_value = CliResult(
            exit_code=1,
            stdout='profile saved\n{"key": "AIzaSyD-SECRETVALUE"}',
            stderr='{"botToken": "123456:ABCDEF"}',
            duration_ms=1,
        )

        response = self.client.post("/command", json={"args": ["auth", "add"]})

        self.assertEqual(response.status_code, 500)
        raw = response.text
        self.assertNotIn("AIzaSyD-SECRETVALUE", raw)
        self.assertNotIn("123456:ABCDEF", raw)
        self.assertIn("profile saved", response.json()["stdout"])

    def test_status_leaves_corrupt_store_untouched(self) -> None:
        self.paths.config_file.write_text("", encoding="utf-8")
        self.paths.auth_profiles_file.write_text("{truncated", encoding="utf-8")

        for _ in range(2):
            self.assertEqual(self.client.get("/status").status_code, 200)
            self.assertEqual(self.client.get("/config").status_code, 200)

        self.assertEqual(self.paths.config_file.read_bytes(), b"")
        self.assertEqual(self.paths.auth_profiles_file.read_bytes(), b"{truncated")
        leftovers = [
            entry.name
            for folder in (self.paths.config_file.parent, self.paths.auth_profiles_file.parent)
            for entry in folder.iterdir()
            if ".corrupt-" in entry.name
        ]
        self.assertEqual(leftovers, [])

    def test_command_timeout_maps_to_gateway_timeout(self) -> None:
        self.runner.side_effect = CommandTimeoutError("Command timed out after 5s (openclaw)")

        response = self.client.post("/command", json={"args": ["status"]})

        self.assertEqual(response.status_code, 504)
        self.assertEqual(response.json()["error_code"], "COMMAND_TIMEOUT")
        self.assertEqual(self.client.get("/status").json()["data"]["recent_commands"][-1]["ok"], False)

    def test_oauth_routes_delegate_to_flow_manager(self) -> None:
        self.oauth.start_login.return_value = "https://accounts.example.com/o/oauth2/auth?x=1"
        self.oauth.submit_callback.side_effect = OAuthFlowNotFoundError("No active login flow for google")

        login = self.client.post("/auth/login", json={"provider": "google"})
        callback = self.client.post(
            "/auth/callback", json={"provider": "google", "callbackUrl": "http://localhost:1/cb?code=1"}
        )

        self.assertEqual(login.json(), {"ok": True, "data": "https://accounts.example.com/o/oauth2/auth?x=1"})
        self.oauth.start_login.assert_called_once_with("google")
        self.assertEqual(callback.status_code, 404)
        self.assertEqual(callback.json()["error_code"], "OAUTH_FLOW_NOT_FOUND")
        self.oauth.submit_callback.assert_called_once_with("google", "http://localhost:1/cb?code=1")

    def test_session_routes(self) -> None:
        sessions_dir = self.paths.sessions_dir
        sessions_dir.mkdir(parents=True, exist_ok=True)
        self.paths.sessions_index_file.write_text(
            json.dumps({"agent:main:main": {"sessionId": "s-1", "updatedAt": 5}}), encoding="utf-8"
        )
        self.paths.transcript_file("s-1").write_text('{"role": "user"}\n', encoding="utf-8")

        listed = self.client.get("/sessions").json()["data"]
        history = self.client.get("/sessions/s-1/history").json()["data"]
        deleted = self.client.delete("/sessions/s-1").json()["data"]
        missing = self.client.get("/sessions/s-1/history")

        self.assertEqual(listed[0]["key"], "agent:main:main")
        self.assertEqual(history, [{"role": "user"}])
        self.assertEqual(deleted, {"key": "agent:main:main", "sessionId": "s-1"})
        self.assertEqual(missing.status_code, 404)

    def test_restart_route_uses_strategy_header(self) -> None:
        restart = self.client.post("/restart").json()
        hot = self.client.post("/restart", headers={"x-strategy": "hot-reload"}).json()

        self.assertEqual(restart["message"], "Restarting...")
        self.assertEqual(hot["data"], {"reload": "hot-reload"})
        self.reloader.schedule.assert_called_once_with()

    def test_unknown_route_uses_error_envelope(self) -> None:
        response = self.client.get("/nope")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error_code"], "NOT_FOUND")
        self.assertEqual(response.json()["ok"], False)


if __name__ == "__main__":
    unittest.main()
