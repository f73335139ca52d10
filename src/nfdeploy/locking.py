"""Cross-process reader/writer lock over the shared runtime-tool installation.

Two files in the lock directory implement it:

- the *gate* (`nanoclr_install.user`). Holding it means holding an OS lock on
  the open gate file (`flock` on POSIX, `msvcrt.locking` on Windows), so the
  operating system releases it when the holder dies. The holder writes its pid
  into the file and deletes the file on release.
- the *roster* (`nanoclr_use.user`), one `pid:count` line per process that
  currently holds shared access. It only exists while someone does.

Exclusive access means holding the gate while no roster exists. Shared access
takes the gate only long enough to update the roster.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, TypeVar

import psutil

if sys.platform == "win32":
    import msvcrt

    def _lock_fd(fd: int) -> None:
        _ = os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)

    def _unlock_fd(fd: int) -> None:
        _ = os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

    # An open file cannot be deleted; the gate is unlinked after closing it.
    _UNLINK_WHILE_OPEN = False
else:
    import fcntl

    def _lock_fd(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock_fd(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)

    _UNLINK_WHILE_OPEN = True

LOCK_DIR_NAME = ".nF"
GATE_FILE_NAME = "nanoclr_install.user"
ROSTER_FILE_NAME = "nanoclr_use.user"

T = TypeVar("T")

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockOutcome(Generic[T]):
    granted: bool
    value: T | None = None


def _pid_alive(pid: int) -> bool:
    return bool(psutil.pid_exists(pid))


class CrossProcessLock:
    def __init__(
        self,
        lock_dir: Path,
        *,
        poll_interval_s: float = 0.01,
        retry_interval_s: float = 0.1,
        pid: int | None = None,
    ) -> None:
        self.lock_dir: Path = lock_dir
        self.gate_path: Path = lock_dir / GATE_FILE_NAME
        self.roster_path: Path = lock_dir / ROSTER_FILE_NAME
        self._poll_interval_s: float = poll_interval_s
        self._retry_interval_s: float = retry_interval_s
        self._pid: int = pid if pid is not None else os.getpid()
        self._gate_fd: int | None = None

    @classmethod
    def for_tool(cls, tool_path: Path | None, *, home: Path) -> CrossProcessLock:
        """Lock guarding `tool_path`; the global tool directory when `None`."""
        if tool_path is not None:
            return cls(tool_path.parent / LOCK_DIR_NAME)
        return cls(home / ".dotnet" / "tools" / LOCK_DIR_NAME)

    def run(
        self,
        action: Callable[[], T],
        *,
        exclusive: bool,
        timeout_s: float | None = None,
        cancel: threading.Event | None = None,
    ) -> LockOutcome[T]:
        """Run `action` under the lock.

        When access is not granted before the timeout or cancellation, the
        action does not run and the lock files are left as found.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        deadline = None if timeout_s is None else time.monotonic() + timeout_s

        def should_stop() -> bool:
            if cancel is not None and cancel.is_set():
                return True
            return deadline is not None and time.monotonic() >= deadline

        if exclusive:
            granted = self._acquire_exclusive(should_stop)
        else:
            granted = self._acquire_shared(should_stop)
        if not granted:
            return LockOutcome(granted=False)

        try:
            value = action()
        finally:
            if exclusive:
                self._release_gate()
            else:
                self._release_shared()
        return LockOutcome(granted=True, value=value)

    # Gate

    def _try_gate(self) -> bool:
        fd = os.open(self.gate_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            _lock_fd(fd)
        except OSError:
            os.close(fd)
            return False
        # The previous holder may have deleted the file between open and lock.
        try:
            current = os.stat(self.gate_path)
        except FileNotFoundError:
            current = None
        if current is None or current.st_ino != os.fstat(fd).st_ino:
            _unlock_fd(fd)
            os.close(fd)
            return False
        os.ftruncate(fd, 0)
        _ = os.lseek(fd, 0, os.SEEK_SET)
        _ = os.write(fd, str(self._pid).encode("ascii"))
        self._gate_fd = fd
        return True

    def _wait_gate(self, should_stop: Callable[[], bool]) -> bool:
        while True:
            if self._try_gate():
                return True
            time.sleep(self._poll_interval_s)
            if should_stop():
                return False

    def _release_gate(self) -> None:
        fd = self._gate_fd
        if fd is None:
            return
        self._gate_fd = None
        if _UNLINK_WHILE_OPEN:
            self.gate_path.unlink(missing_ok=True)
            _unlock_fd(fd)
            os.close(fd)
            return
        _unlock_fd(fd)
        os.close(fd)
        try:
            self.gate_path.unlink(missing_ok=True)
        except PermissionError:
            # Another process already has the gate open and takes it over.
            _log.debug("gate %s in use by another process", self.gate_path)

    # Roster

    def read_roster(self) -> dict[int, int]:
        if not self.roster_path.is_file():
            return {}
        entries: dict[int, int] = {}
        for raw in self.roster_path.read_bytes().splitlines():
            try:
                line = raw.decode("ascii").strip()
            except UnicodeDecodeError:
                _log.debug("ignoring undecodable roster line %r", raw)
                continue
            pid_text, sep, count_text = line.partition(":")
            if not sep or not pid_text.isdigit() or not count_text.isdigit():
                if line:
                    _log.debug("ignoring malformed roster line %r", line)
                continue
            entries[int(pid_text)] = entries.get(int(pid_text), 0) + int(count_text)
        return entries

    def _update_roster(self, delta: int) -> None:
        """Apply `delta` to this process's entry and drop dead or empty entries.

        Must be called while holding the gate.
        """
        entries = self.read_roster()
        entries[self._pid] = entries.get(self._pid, 0) + delta
        live = {
            pid: count
            for pid, count in entries.items()
            if count > 0 and (pid == self._pid or _pid_alive(pid))
        }
        if not live:
            self.roster_path.unlink(missing_ok=True)
            return
        lines = [f"{pid}:{count}\n" for pid, count in live.items()]
        _ = self.roster_path.write_text("".join(lines), encoding="ascii")

    # Modes

    def _acquire_exclusive(self, should_stop: Callable[[], bool]) -> bool:
        while True:
            if not self._wait_gate(should_stop):
                return False
            try:
                if self.roster_path.exists():
                    self._update_roster(0)
                in_use = self.roster_path.exists()
            except BaseException:
                self._release_gate()
                raise
            if not in_use:
                return True
            self._release_gate()
            time.sleep(self._retry_interval_s)
            if should_stop():
                return False

    def _acquire_shared(self, should_stop: Callable[[], bool]) -> bool:
        if not self._wait_gate(should_stop):
            return False
        try:
            self._update_roster(1)
        finally:
            self._release_gate()
        return True

    def _release_shared(self) -> None:
        _ = self._wait_gate(lambda: False)
        try:
            self._update_roster(-1)
        finally:
            self._release_gate()
