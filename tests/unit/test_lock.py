import os
from pathlib import Path
from unittest.mock import patch

import pytest

from cardsync.sync.orchestrator import FileLock


@pytest.fixture
def lock_path(tmp_path) -> str:
    return str(tmp_path / "cardsync.lock")


def _pid_in(path: str) -> str:
    return Path(path).read_text(encoding="utf-8").strip()


def test_lock_writes_pid_and_cleans_up(lock_path) -> None:
    """The lock file holds our PID while held and is removed afterwards."""
    with FileLock(lock_path):
        assert _pid_in(lock_path) == str(os.getpid())

    assert not Path(lock_path).exists()


def test_second_holder_is_refused(lock_path) -> None:
    with FileLock(lock_path):
        with pytest.raises(RuntimeError, match="Another instance is running"):
            FileLock(lock_path).acquire()


def test_live_pid_is_respected(lock_path) -> None:
    Path(lock_path).write_text(str(os.getpid()))

    with pytest.raises(RuntimeError, match="Another instance is running"):
        FileLock(lock_path).acquire()
    assert Path(lock_path).exists()


@pytest.mark.parametrize("content", ["999999", "not-a-pid", ""])
def test_stale_lock_is_taken_over(lock_path, content) -> None:
    """Dead or unreadable owners do not block the scheduler."""
    Path(lock_path).write_text(content)

    with patch("os.kill", side_effect=OSError("No such process")):
        with FileLock(lock_path):
            assert _pid_in(lock_path) == str(os.getpid())


def test_unexpected_os_error_propagates(lock_path) -> None:
    with patch("os.open", side_effect=PermissionError("Permission denied")):
        with pytest.raises(PermissionError):
            FileLock(lock_path).acquire()


def test_released_on_exception(lock_path) -> None:
    with pytest.raises(ValueError):
        with FileLock(lock_path):
            raise ValueError("tick failed")

    assert not Path(lock_path).exists()


def test_explicit_acquire_release_is_idempotent(lock_path) -> None:
    lock = FileLock(lock_path)
    lock.acquire()
    assert Path(lock_path).exists()

    lock.release()
    lock.release()

    assert not Path(lock_path).exists()
