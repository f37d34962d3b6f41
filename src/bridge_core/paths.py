from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = "openclaw.json"
AUTH_PROFILES_RELATIVE = Path("agents") / "main" / "agent" / "auth-profiles.json"
SESSIONS_RELATIVE = Path("agents") / "main" / "sessions"


@dataclass(frozen=True)
class SandboxPaths:
    state_dir: Path
    config_file: Path
    auth_profiles_file: Path
    sessions_dir: Path

    @property
    def sessions_index_file(self) -> Path:
        return self.sessions_dir / "sessions.json"

    def transcript_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.jsonl"


def default_sandbox_paths(state_dir: str | Path) -> SandboxPaths:
    root = Path(state_dir).expanduser()
    return SandboxPaths(
        state_dir=root,
        config_file=root / CONFIG_FILE_NAME,
        auth_profiles_file=root / AUTH_PROFILES_RELATIVE,
        sessions_dir=root / SESSIONS_RELATIVE,
    )


def resolve_sandbox_paths(paths_config: Any, *, state_dir_override: str | Path | None = None) -> SandboxPaths:
    """Resolve store locations from a ``PathsConfig``; unset files derive from the state dir."""
    state_dir = str(state_dir_override or getattr(paths_config, "state_dir", "") or "").strip()
    defaults = default_sandbox_paths(state_dir or "/home/node/.openclaw")

    def _pick(attr: str, fallback: Path) -> Path:
        configured = str(getattr(paths_config, attr, "") or "").strip()
        return Path(configured).expanduser() if configured else fallback

    return SandboxPaths(
        state_dir=defaults.state_dir,
        config_file=_pick("config_file", defaults.config_file),
        auth_profiles_file=_pick("auth_profiles_file", defaults.auth_profiles_file),
        sessions_dir=_pick("sessions_dir", defaults.sessions_dir),
    )
