"""Per-path and global mount locks backed by lock files."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from types import TracebackType
from typing import Optional

from filelock import FileLock, Timeout

from afpack.errors import Busy, MountConflict

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def lock_file_for(locks_dir: Path, logical_path: Path) -> Path:
    digest = hashlib.sha256(str(logical_path).encode("utf-8")).hexdigest()[:32]
    return locks_dir / f"{digest}.lock"


class PathLock:
    """Exclusive, non-blocking lock on one managed path.

    A second holder (other process or other thread) fails immediately with
    Busy instead of queuing. Holder metadata (pid, host, command) is written
    next to the lock file so status and Busy errors can say who holds it.
    """

    def __init__(self, locks_dir: Path, logical_path: Path, command: str = "") -> None:
        self.logical_path = logical_path
        self.command = command
        self.path = lock_file_for(locks_dir, logical_path)
        self._lock = FileLock(str(self.path))

    def _meta_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".json")

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            holder = read_holder(self.path.parent, self.logical_path)
            detail = ""
            if holder:
                detail = f" (held by pid {holder.get('pid')} running {holder.get('command') or 'unknown'})"
            raise Busy(
                f"Another operation is in progress on {self.logical_path}{detail}",
                path=self.logical_path,
            ) from None
        self._write_metadata()

    def release(self) -> None:
        if self._lock.is_locked:
            try:
                self._meta_path().unlink()
            except FileNotFoundError:
                pass
            self._lock.release()

    def __enter__(self) -> PathLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()

    def _write_metadata(self) -> None:
        payload = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "command": self.command,
            "logical_path": str(self.logical_path),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._meta_path().open("w", encoding="utf-8") as handle:
            json.dump(payload, handle)
            handle.flush()
            os.fsync(handle.fileno())


def read_holder(locks_dir: Path, logical_path: Path) -> Optional[dict]:
    """Metadata of the current lock holder, or None if nobody live holds it.

    Reads only; never takes the lock.
    """
    meta_path = lock_file_for(locks_dir, logical_path).with_suffix(".lock.json")
    try:
        payload = json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if payload.get("hostname") == socket.gethostname() and not _pid_alive(int(payload.get("pid", 0))):
        return None
    return payload


class MountLock:
    """Global critical section around attach/detach.

    Serializes threads of this process and every process on the host.
    Waits up to ``timeout`` seconds, then raises MountConflict.
    """

    def __init__(self, path: Path, timeout: float = 300.0) -> None:
        self.path = path
        self.timeout = timeout
        self._thread_lock = Lock()
        self._file_lock = FileLock(str(path))

    def __enter__(self) -> MountLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise MountConflict(f"Timed out waiting for mount lock {self.path}", retry_safe=True)
        try:
            self._file_lock.acquire(timeout=self.timeout)
        except Timeout:
            self._thread_lock.release()
            raise MountConflict(f"Timed out waiting for mount lock {self.path}", retry_safe=True) from None
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self._file_lock.release()
        self._thread_lock.release()
