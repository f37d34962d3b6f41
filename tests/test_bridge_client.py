from __future__ import annotations

import json
import subprocess
import sys
import unittest
import urllib.error
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for entry in (SRC, ROOT / "tests"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))

from bridge_core.errors import BridgeRequestError, BridgeUnreachableError, ContainerRuntimeError
from bridge_orchestrator.client import BridgeClient
from bridge_orchestrator.container import (
    CONTAINER_STATUS_RUNNING,
    CONTAINER_STATUS_STOPPED,
    ContainerInfo,
    DockerCliRuntime,
    ExecResult,
    parse_inspect_payload,
)
from orchestrator_fakes import FakeRuntime, ScriptedUrlopen


def _client(script: list, *, runtime: FakeRuntime | None = None, platform: str = "linux") -> tuple[BridgeClient, ScriptedUrlopen, list[float], FakeRuntime]:
    runtime = runtime or FakeRuntime()
    urlopen = ScriptedUrlopen(script)
    sleeps: list[float] = []
    client = BridgeClient(runtime=runtime, platform=platform, urlopen=urlopen, sleep=sleeps.append)
    return client, urlopen, sleeps, runtime


class BridgeClientRetryTests(unittest.TestCase):
    def test_retries_server_errors_with_backoff_then_succeeds(self) -> None:
        client, urlopen, sleeps, _runtime = _client(
            [(502, "bad gateway"), (503, {"ok": False, "error": "busy"}), (200, {"ok": True, "data": {"status": "ok"}})]
        )

        envelope = client.call("sbx", "GET", "/status")

        self.assertEqual(envelope["data"], {"status": "ok"})
        self.assertEqual(len(urlopen.requests), 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(urlopen.timeouts, [15.0, 15.0, 15.0])
        self.assertEqual(urlopen.requests[0].full_url, "http://172.18.0.5:4444/status")

    def test_client_error_is_not_retried(self) -> None:
        client, urlopen, sleeps, _runtime = _client([(400, {"ok": False, "error": "Missing provider or key"})])

        with self.assertRaises(BridgeRequestError) as raised:
            client.add_auth("sbx", "openai", "")

        self.assertEqual(raised.exception.status_code, 400)
        self.assertIn("Missing provider or key", str(raised.exception))
        self.assertEqual(len(urlopen.requests), 1)
        self.assertEqual(sleeps, [])

    def test_command_is_single_attempt_with_long_timeout_and_no_exec_fallback(self) -> None:
        client, urlopen, sleeps, runtime = _client([(502, "bad gateway")])

        with self.assertRaises(BridgeUnreachableError):
            client.run_command("sbx", ["models", "list"])

        self.assertEqual(len(urlopen.requests), 1)
        self.assertEqual(urlopen.timeouts, [60.0])
        self.assertEqual(sleeps, [])
        self.assertEqual(runtime.exec_calls, [])

    def test_application_failure_envelope_is_not_retried(self) -> None:
        client, urlopen, _sleeps, _runtime = _client(
            [(502, {"ok": False, "error": "Login for google failed", "error_code": "OAUTH_LOGIN_FAILED"})]
        )

        with self.assertRaises(BridgeRequestError):
            client.start_login("sbx", "google")

        self.assertEqual(len(urlopen.requests), 1)

    def test_exhausted_retries_fall_back_to_in_container_curl(self) -> None:
        def exec_handler(cmd, **_kwargs) -> ExecResult:
            return ExecResult(0, json.dumps({"ok": True, "data": {"message": "Config updated"}}), "")

        runtime = FakeRuntime(exec_handler=exec_handler)
        client, urlopen, sleeps, _runtime = _client([urllib.error.URLError("refused")] * 3, runtime=runtime)

        envelope = client.update_config("sbx", {"a": 1}, reload=False)

        self.assertEqual(envelope["data"], {"message": "Config updated"})
        self.assertEqual(len(urlopen.requests), 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        cmd = runtime.exec_calls[0]["cmd"]
        self.assertEqual(cmd[:4], ["curl", "-s", "-X", "POST"])
        self.assertIn("x-reload: false", cmd)
        self.assertEqual(cmd[-1], "http://127.0.0.1:4444/config/update")

    def test_unreachable_after_retries_and_failed_fallback(self) -> None:
        runtime = FakeRuntime(exec_handler=lambda cmd, **_kwargs: ExecResult(7, "", "curl: (7) refused"))
        client, _urlopen, _sleeps, _runtime = _client([], runtime=runtime)

        with self.assertRaises(BridgeUnreachableError):
            client.get_config("sbx")

    def test_stopped_container_is_unreachable_without_http(self) -> None:
        runtime = FakeRuntime(info=ContainerInfo(status=CONTAINER_STATUS_STOPPED))
        client, urlopen, _sleeps, _runtime = _client([], runtime=runtime)

        with self.assertRaises(BridgeUnreachableError):
            client.status("sbx")
        self.assertEqual(urlopen.requests, [])

    def test_inspect_failure_is_unreachable(self) -> None:
        runtime = FakeRuntime()
        runtime.inspect_results = [ContainerRuntimeError("docker not found")]
        client, _urlopen, _sleeps, _runtime = _client([], runtime=runtime)

        with self.assertRaises(BridgeUnreachableError):
            client.status("sbx")

    def test_malformed_success_body_is_request_error(self) -> None:
        client, _urlopen, _sleeps, _runtime = _client([(200, "<html>proxy</html>")])

        with self.assertRaises(BridgeRequestError):
            client.get_config("sbx")

    def test_post_requests_ask_for_reload_by_default(self) -> None:
        client, urlopen, _sleeps, _runtime = _client([(200, {"ok": True, "data": "https://auth"})])

        self.assertEqual(client.start_login("sbx", "google"), "https://auth")
        request = urlopen.requests[0]
        self.assertEqual(request.get_method(), "POST")
        self.assertEqual(request.get_header("X-reload"), "true")
        self.assertEqual(json.loads(request.data), {"provider": "google"})

    def test_probe_is_single_attempt(self) -> None:
        client, urlopen, sleeps, runtime = _client([(503, "starting")])

        self.assertFalse(client.probe("sbx"))
        self.assertEqual(len(urlopen.requests), 1)
        self.assertEqual(sleeps, [])
        self.assertEqual(runtime.exec_calls, [])


class CandidateUrlTests(unittest.TestCase):
    def test_network_address_first_on_linux_and_loopback_first_on_desktop(self) -> None:
        info = ContainerInfo(status=CONTAINER_STATUS_RUNNING, ip="172.18.0.5", bridge_host_port="49153")
        linux = BridgeClient(runtime=FakeRuntime(), platform="linux")
        darwin = BridgeClient(runtime=FakeRuntime(), platform="darwin")

        self.assertEqual(
            linux.candidate_urls(info, "/status"),
            ["http://172.18.0.5:4444/status", "http://127.0.0.1:49153/status"],
        )
        self.assertEqual(
            darwin.candidate_urls(info, "/status"),
            ["http://127.0.0.1:49153/status", "http://172.18.0.5:4444/status"],
        )

    def test_failed_network_address_falls_through_to_loopback_within_one_attempt(self) -> None:
        runtime = FakeRuntime(info=ContainerInfo(status=CONTAINER_STATUS_RUNNING, ip="10.0.0.2", bridge_host_port="49153"))
        client, urlopen, sleeps, _runtime = _client(
            [urllib.error.URLError("no route"), (200, {"ok": True, "data": {}})], runtime=runtime
        )

        client.status("sbx")

        self.assertEqual(
            [request.full_url for request in urlopen.requests],
            ["http://10.0.0.2:4444/status", "http://127.0.0.1:49153/status"],
        )
        self.assertEqual(sleeps, [])

    def test_parse_inspect_payload_prefers_named_network(self) -> None:
        payload = [
            {
                "State": {"Status": "running", "StartedAt": "2026-01-01T00:00:00Z"},
                "NetworkSettings": {
                    "Networks": {"bridge": {"IPAddress": "172.17.0.2"}, "sandboxes": {"IPAddress": "10.9.0.3"}},
                    "Ports": {"4444/tcp": [{"HostIp": "127.0.0.1", "HostPort": "49200"}]},
                },
            }
        ]

        info = parse_inspect_payload(payload, network="sandboxes")

        self.assertTrue(info.running)
        self.assertEqual((info.ip, info.bridge_host_port), ("10.9.0.3", "49200"))
        self.assertEqual(parse_inspect_payload([]).status, CONTAINER_STATUS_STOPPED)


class DockerCliRuntimeTests(unittest.TestCase):
    def setUp(self) -> None:
        which = mock.patch("bridge_orchestrator.container.shutil.which", return_value="/usr/bin/docker")
        which.start()
        self.addCleanup(which.stop)

    def _completed(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)

    def test_lifecycle_verbs_and_exec_build_docker_argv(self) -> None:
        runtime = DockerCliRuntime()
        with mock.patch("bridge_orchestrator.container.subprocess.run", return_value=self._completed(stdout="ok")) as run:
            runtime.start("sbx")
            runtime.stop("sbx")
            result = runtime.exec("sbx", ["cat", "/tmp/x"], user="root", stdin="data")

        argvs = [call.args[0] for call in run.call_args_list]
        self.assertEqual(argvs[0], ["docker", "start", "sbx"])
        self.assertEqual(argvs[1], ["docker", "stop", "sbx"])
        self.assertEqual(argvs[2], ["docker", "exec", "-i", "-u", "root", "sbx", "cat", "/tmp/x"])
        self.assertEqual(run.call_args_list[2].kwargs["input"], "data")
        self.assertEqual(result, ExecResult(0, "ok", ""))

    def test_failed_start_raises_runtime_error(self) -> None:
        runtime = DockerCliRuntime()
        failed = self._completed(returncode=1, stderr="Error: No such container: sbx")
        with mock.patch("bridge_orchestrator.container.subprocess.run", return_value=failed):
            with self.assertRaises(ContainerRuntimeError) as raised:
                runtime.start("sbx")

        self.assertIn("No such container", str(raised.exception))


if __name__ == "__main__":
    unittest.main()
