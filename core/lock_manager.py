"""Rsync Guard — Lock Manager

Serializes invocations against the same restricted tree with flock(2):
senders take a shared lock, receivers an exclusive one. The descriptor is
left inheritable so the lock is carried across execv() into rsync and is
released only when the transfer process exits. Under a privilege helper
the guard stays resident as rsync's parent instead (see core.executor).
"""

from __future__ import annotations
import fcntl
import logging
import os
from typing import Optional

from core.errors import LockUnavailable
from models.models import Role

logger = logging.getLogger("rsync_guard.lock_manager")

DEFAULT_LOCK_FILE = os.path.expanduser("~/.rsync-guard.lock")


class LockManager:
    def __init__(self, lock_path: str = DEFAULT_LOCK_FILE, blocking: bool = True):
        self.lock_path = lock_path
        self.blocking = blocking
        self._fd: Optional[int] = None
        self.mode: Optional[int] = None

    @staticmethod
    def mode_for(role: Role) -> int:
        return fcntl.LOCK_SH if role is Role.SENDER else fcntl.LOCK_EX

    def acquire(self, role: Role) -> None:
        if self._fd is not None:
            raise LockUnavailable("lock already held by this process")
        mode = self.mode_for(role)
        if not self.blocking:
            mode |= fcntl.LOCK_NB

        open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
        if hasattr(os, "O_NOFOLLOW"):
            open_flags |= os.O_NOFOLLOW
        try:
            fd = os.open(self.lock_path, open_flags, 0o600)
        except OSError as e:
            raise LockUnavailable(f"cannot open lock file {self.lock_path!r}: {e}")

        try:
            fcntl.flock(fd, mode)
            os.set_inheritable(fd, True)
        except OSError as e:
            os.close(fd)
            raise LockUnavailable(f"cannot lock {self.lock_path!r}: {e}")

        self._fd = fd
        self.mode = mode & ~fcntl.LOCK_NB
        logger.debug(
            "Lock acquired: %s (%s)",
            self.lock_path, "shared" if self.mode == fcntl.LOCK_SH else "exclusive",
        )

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
            self.mode = None
        logger.debug("Lock released: %s", self.lock_path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> LockManager:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
