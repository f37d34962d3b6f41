from sandbox_bridge.integrations.command_runner import CliResult, run_cli

__all__ = ["CliResult", "run_cli"]
