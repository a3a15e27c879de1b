import fcntl
import os

import pytest

from core.errors import LockUnavailable
from core.lock_manager import LockManager
from models.models import Role


@pytest.fixture
def lock_path(tmp_path):
    return str(tmp_path / "guard.lock")


def _try_lock(lock_path, role):
    """Non-blocking attempt from a second open file description."""
    other = LockManager(lock_path, blocking=False)
    try:
        other.acquire(role)
    except LockUnavailable:
        return False
    other.release()
    return True


def test_sender_takes_shared_lock(lock_path):
    with LockManager(lock_path) as lock:
        lock.acquire(Role.SENDER)
        assert lock.held
        assert lock.mode == fcntl.LOCK_SH
        assert _try_lock(lock_path, Role.SENDER)
        assert not _try_lock(lock_path, Role.RECEIVER)
    assert not lock.held


def test_receiver_takes_exclusive_lock(lock_path):
    with LockManager(lock_path) as lock:
        lock.acquire(Role.RECEIVER)
        assert lock.mode == fcntl.LOCK_EX
        assert not _try_lock(lock_path, Role.SENDER)
        assert not _try_lock(lock_path, Role.RECEIVER)
    assert _try_lock(lock_path, Role.RECEIVER)


def test_lock_fd_survives_exec(lock_path):
    lock = LockManager(lock_path)
    lock.acquire(Role.RECEIVER)
    try:
        assert os.get_inheritable(lock._fd)
    finally:
        lock.release()


def test_double_acquire_refused(lock_path):
    with LockManager(lock_path) as lock:
        lock.acquire(Role.SENDER)
        with pytest.raises(LockUnavailable):
            lock.acquire(Role.SENDER)


def test_symlinked_lock_file_refused(tmp_path, lock_path):
    target = tmp_path / "elsewhere"
    target.write_text("")
    os.symlink(str(target), lock_path)
    with pytest.raises(LockUnavailable):
        LockManager(lock_path).acquire(Role.SENDER)


def test_unopenable_lock_file(tmp_path):
    lock = LockManager(str(tmp_path / "no-such-dir" / "guard.lock"))
    with pytest.raises(LockUnavailable) as exc:
        lock.acquire(Role.RECEIVER)
    assert exc.value.public_message == "unable to lock the restricted directory"


def test_release_is_idempotent(lock_path):
    lock = LockManager(lock_path)
    lock.release()
    lock.acquire(Role.SENDER)
    lock.release()
    lock.release()
    assert not lock.held
