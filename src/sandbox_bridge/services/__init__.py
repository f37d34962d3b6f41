"""Sandbox bridge service modules."""

__all__ = [
    "command_service",
    "config_service",
    "reload_service",
    "session_service",
]
