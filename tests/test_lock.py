"""Tests for the single-run process lock."""
from __future__ import annotations

import pytest

from disk_monitor.errors import LockContention
from disk_monitor.lock import RunLock


class TestRunLock:
    def test_acquire_and_release(self, tmp_path):
        path = tmp_path / "lock" / "run.lock"
        with RunLock(path) as lock:
            assert lock.locked
            assert path.read_text().strip().isdigit()
        assert not lock.locked

    def test_contention(self, tmp_path):
        path = tmp_path / "run.lock"
        with RunLock(path):
            with pytest.raises(LockContention):
                RunLock(path).acquire()

    def test_reacquire_after_release(self, tmp_path):
        path = tmp_path / "run.lock"
        first = RunLock(path)
        first.acquire()
        first.release()
        second = RunLock(path)
        second.acquire()
        second.release()

    def test_release_without_acquire(self, tmp_path):
        RunLock(tmp_path / "run.lock").release()
