"""Tests for mdpipe.lock module."""

import os

import pytest

from mdpipe.errors import PreconditionError
from mdpipe.lock import RunLock


class TestRunLock:
    def test_acquire_and_release(self, tmp_path):
        path = tmp_path / "prot.lock"
        with RunLock(path):
            assert path.read_text().strip() == str(os.getpid())
        assert not path.exists()

    def test_held_by_live_process(self, tmp_path):
        path = tmp_path / "prot.lock"
        with RunLock(path):
            with pytest.raises(PreconditionError, match="locked"):
                RunLock(path).acquire()

    def test_stale_lock_replaced(self, tmp_path, caplog):
        path = tmp_path / "prot.lock"
        path.write_text("999999999\n")
        with RunLock(path):
            assert path.read_text().strip() == str(os.getpid())
        assert "stale" in caplog.text

    def test_garbage_lock_replaced(self, tmp_path):
        path = tmp_path / "prot.lock"
        path.write_text("not a pid\n")
        lock = RunLock(path)
        lock.acquire()
        lock.release()
        assert not path.exists()

    def test_release_without_acquire(self, tmp_path):
        path = tmp_path / "prot.lock"
        path.write_text("123\n")
        RunLock(path).release()
        assert path.exists()
