from sandbox_bridge.runtime.matchers import (
    LoginUrlMatcher,
    MatchEvent,
    Marker,
    MarkerMatcher,
    callback_result_matcher,
    strip_ansi,
)
from sandbox_bridge.runtime.terminal import ManagedProcess, PtyProcess, set_terminal_size

__all__ = [
    "LoginUrlMatcher",
    "ManagedProcess",
    "MatchEvent",
    "Marker",
    "MarkerMatcher",
    "PtyProcess",
    "callback_result_matcher",
    "set_terminal_size",
    "strip_ansi",
]
