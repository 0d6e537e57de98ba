"""Single-instance lock backed by an flock on a file in the working directory."""

from __future__ import annotations

import fcntl
import os
from typing import Optional

from darkfactory.frontmatter import PathLike

LOCK_FILE_NAME = ".dark-factory.lock"


class LockError(Exception):
    """Raised when the lock cannot be taken or given back."""


class Locker:
    """Exclusive lock that keeps two instances from working on one directory.

    The lock file holds the PID of the owner. The kernel drops the lock
    when the holding process exits, so a crash never leaves it stuck.
    """

    def __init__(self, directory: PathLike) -> None:
        self.lock_path = os.path.join(os.fspath(directory), LOCK_FILE_NAME)
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """Take the lock without blocking; raise LockError if another instance holds it."""
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as exc:
            raise LockError(f"open lock file: {exc}") from exc

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            pid = self._read_pid()
            if pid > 0:
                raise LockError(
                    f"another instance is already running (pid {pid})"
                ) from None
            raise LockError("another instance is already running") from None

        try:
            self._write_pid(fd)
        except OSError as exc:
            os.close(fd)
            raise LockError(f"write pid to lock file: {exc}") from exc

        self._fd = fd

    def release(self) -> None:
        """Give the lock back and remove the lock file; does nothing if not held."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        except OSError as exc:
            raise LockError(f"unlock file: {exc}") from exc
        try:
            os.close(self._fd)
        except OSError as exc:
            raise LockError(f"close lock file: {exc}") from exc
        self._fd = None
        try:
            os.remove(self.lock_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise LockError(f"remove lock file: {exc}") from exc

    def __enter__(self) -> "Locker":
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()

    def _read_pid(self) -> int:
        try:
            with open(self.lock_path, encoding="utf-8") as handle:
                return int(handle.read().strip())
        except (OSError, ValueError):
            return 0

    @staticmethod
    def _write_pid(fd: int) -> None:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        os.fsync(fd)