from __future__ import annotations

import codecs
import fcntl
import os
import signal
import struct
import subprocess
import termios
from threading import Lock, Thread
from typing import Any, Callable, Protocol

OutputCallback = Callable[[str], None]
ExitCallback = Callable[["int | None"], None]


def set_terminal_size(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


class ManagedProcess(Protocol):
    pid: int | None

    def start(self, on_output: OutputCallback, on_exit: ExitCallback) -> None: ...

    def write(self, data: str) -> None: ...

    def kill(self) -> None: ...


class PtyProcess:
    """Child process attached to a pseudo-terminal, streaming decoded output to a callback."""

    def __init__(
        self,
        cmd: list[str],
        *,
        cols: int = 120,
        rows: int = 30,
        env: dict[str, str] | None = None,
        kill_grace_seconds: float = 2.0,
    ) -> None:
        self.cmd = list(cmd)
        self.cols = int(cols)
        self.rows = int(rows)
        self._env = env
        self._kill_grace_seconds = float(kill_grace_seconds)
        self._process: subprocess.Popen[Any] | None = None
        self._master_fd: int | None = None
        self._fd_lock = Lock()
        self.pid: int | None = None

    def start(self, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        master_fd, slave_fd = os.openpty()
        resolved_env = dict(os.environ)
        resolved_env.setdefault("TERM", "xterm-256color")
        if self._env:
            resolved_env.update({str(key): str(value) for key, value in self._env.items()})
        try:
            set_terminal_size(slave_fd, self.cols, self.rows)
            proc = subprocess.Popen(
                self.cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                close_fds=True,
                start_new_session=True,
                env=resolved_env,
            )
        except Exception:
            for fd in (master_fd, slave_fd):
                try:
                    os.close(fd)
                except OSError:
                    pass
            raise

        try:
            os.close(slave_fd)
        except OSError:
            pass

        self._process = proc
        self._master_fd = master_fd
        self.pid = proc.pid
        Thread(target=self._reader_loop, args=(master_fd, on_output, on_exit), daemon=True).start()

    def _reader_loop(self, master_fd: int, on_output: OutputCallback, on_exit: ExitCallback) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        exit_code: int | None = None
        try:
            while True:
                try:
                    chunk = os.read(master_fd, 4096)
                except OSError:
                    break
                if not chunk:
                    break
                decoded = decoder.decode(chunk)
                if decoded:
                    on_output(decoded)
            tail = decoder.decode(b"", final=True)
            if tail:
                on_output(tail)
        finally:
            self._close_master()
            if self._process is not None:
                try:
                    exit_code = self._process.wait(timeout=self._kill_grace_seconds)
                except subprocess.TimeoutExpired:
                    exit_code = self._process.poll()
            on_exit(exit_code)

    def _close_master(self) -> None:
        with self._fd_lock:
            fd = self._master_fd
            self._master_fd = None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError:
            pass

    def write(self, data: str) -> None:
        with self._fd_lock:
            fd = self._master_fd
            if fd is None:
                raise OSError("terminal is closed")
            os.write(fd, data.encode("utf-8", errors="ignore"))

    def kill(self) -> None:
        proc = self._process
        if proc is None or proc.poll() is not None:
            self._close_master()
            return
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self._kill_grace_seconds)
        except subprocess.TimeoutExpired:
            _signal_group(proc.pid, signal.SIGKILL)
        self._close_master()


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        pgid = os.getpgid(pid)
    except (ProcessLookupError, OSError):
        pgid = None
    try:
        if pgid:
            os.killpg(pgid, sig)
        else:
            os.kill(pid, sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            os.kill(pid, sig)
        except (ProcessLookupError, PermissionError, OSError):
            return
