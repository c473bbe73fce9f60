"""Pid-file based daemon control and signal helpers."""

from __future__ import annotations

import atexit
import contextlib
import fcntl
import os
import re
import signal
import sys
import time
from typing import Any, Callable, Optional, Sequence

_LEADING_INT = re.compile(rb"\s*([+-]?\d+)")


class DaemonError(RuntimeError):
    """Raised when a daemon control command cannot be carried out."""


def _atoi(data: bytes) -> int:
    match = _LEADING_INT.match(data)
    return int(match.group(1)) if match else 0


def get_pid_from_file(pidfile: str) -> Optional[int]:
    """Process id stored in ``pidfile``; ``None`` if unreadable or empty."""
    try:
        with open(pidfile, "rb") as fh:
            data = fh.read(64)
    except OSError:
        return None
    if not data:
        return None
    data = data[:63].split(b"\n", 1)[0].split(b"\0", 1)[0]
    return _atoi(data)


def _write_pid_file(pidfile: str) -> None:
    try:
        fd = os.open(pidfile, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    except OSError as exc:
        raise DaemonError(f"Can't write Pid File: {pidfile}") from exc
    try:
        try:
            fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            raise DaemonError(f"Can't write Pid File: {pidfile}") from exc
        data = f"{os.getpid()}\n".encode()
        try:
            written = os.write(fd, data)
        except OSError as exc:
            raise DaemonError(f"Can't Write Pid File: {pidfile}") from exc
        if written != len(data):
            raise DaemonError(f"Can't Write Pid File: {pidfile}")
    finally:
        os.close(fd)


def _unlink_quietly(path: str) -> None:
    with contextlib.suppress(OSError):
        os.unlink(path)


def daemon_start(pidfile: str) -> None:
    """Detach into the background; the parent exits, the child returns."""
    pid = get_pid_from_file(pidfile)
    if pid is not None and pid > 0:
        try:
            os.kill(pid, 0)
            exists = True
        except PermissionError:
            exists = True
        except OSError:
            exists = False
        if exists:
            raise DaemonError("daemon exists, use restart")
    if os.getppid() == 1:
        raise DaemonError("already daemon, can't start")
    try:
        child = os.fork()
    except OSError as exc:
        raise DaemonError(f"fork error: {exc}") from exc
    if child > 0:
        sys.exit(0)
    os.setsid()
    _write_pid_file(pidfile)
    try:
        fd = os.open(os.devnull, os.O_RDONLY)
    except OSError as exc:
        raise DaemonError(f"cannot open {os.devnull}") from exc
    os.dup2(fd, 0)
    os.dup2(fd, 1)
    os.close(fd)
    atexit.register(_unlink_quietly, pidfile)


def daemon_stop(pidfile: str) -> None:
    """Send SIGQUIT to the recorded process and wait up to 3 seconds for it to go."""
    pid = get_pid_from_file(pidfile)
    if pid is None or pid <= 0:
        raise DaemonError(f"{pidfile} not exists or not valid")
    try:
        os.kill(pid, signal.SIGQUIT)
    except OSError as exc:
        raise DaemonError(f"program {pid} not exists") from exc
    for _ in range(300):
        time.sleep(0.01)
        try:
            os.kill(pid, signal.SIGQUIT)
        except OSError:
            print(f"program {pid} exited", file=sys.stderr)
            _unlink_quietly(pidfile)
            return
    raise DaemonError("signal sended to process, but still exists after 3 seconds")


def daemon_restart(pidfile: str) -> None:
    """Stop a running daemon if there is one, then start again."""
    pid = get_pid_from_file(pidfile)
    if pid is not None and pid > 0:
        try:
            os.kill(pid, 0)
        except PermissionError as exc:
            raise DaemonError(f"do not have permission to kill process: {pid}") from exc
        except OSError:
            pass
        else:
            daemon_stop(pidfile)
    else:
        print("pid file not valid, just ignore", file=sys.stderr)
    daemon_start(pidfile)


def daemon_process(cmd: Optional[str], pidfile: str) -> None:
    """Carry out start, stop or restart; exits 1 on error and 0 after stop."""
    try:
        if cmd is None or cmd == "start":
            daemon_start(pidfile)
        elif cmd == "stop":
            daemon_stop(pidfile)
            sys.exit(0)
        elif cmd == "restart":
            daemon_restart(pidfile)
        else:
            raise DaemonError("ERROR: bad daemon command. exit")
    except DaemonError as exc:
        print(exc, file=sys.stderr)
        sys.exit(1)


def change_to(argv: Sequence[str]) -> None:
    """Fork a child that waits for this process to exit and then execs ``argv``."""
    args = list(argv)
    parent = os.getpid()
    try:
        child = os.fork()
    except OSError as exc:
        print(f"fork error {exc.errno} {exc.strerror}", file=sys.stderr)
        return
    if child > 0:
        return
    while True:
        try:
            os.kill(parent, 0)
        except ProcessLookupError:
            break
        except OSError:
            os.write(2, b"kill error\n")
            os._exit(1)
        time.sleep(0.01)
    try:
        os.execvp(args[0], args)
    except OSError:
        os._exit(1)


_handlers: dict[int, Callable[[], Any]] = {}


def _dispatch(sig: int, frame: Any) -> None:
    _handlers[sig]()


def set_signal(sig: int, handler: Callable[[], Any]) -> None:
    """Call ``handler()`` with no arguments whenever ``sig`` arrives."""
    _handlers[sig] = handler
    signal.signal(sig, _dispatch)