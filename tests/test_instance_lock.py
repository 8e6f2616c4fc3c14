"""
PID-file single instance lock: acquisition, live-holder refusal and stale
lock reclamation.
"""

import os

import pytest

from infra.instance_lock import SingleInstanceLock, check_single_instance


def test_acquire_writes_pid_and_release_removes(tmp_path):
    lock = SingleInstanceLock("levelbounce", lock_dir=str(tmp_path))

    assert lock.acquire()
    assert lock.lock_file.read_text() == str(os.getpid())

    lock.release()
    assert not lock.lock_file.exists()
    assert not lock.acquired


def test_live_holder_blocks(tmp_path, monkeypatch):
    (tmp_path / "levelbounce.pid").write_text("424242")
    monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: True))

    assert check_single_instance("levelbounce", str(tmp_path)) is None
    assert (tmp_path / "levelbounce.pid").read_text() == "424242"


def test_stale_lock_is_reclaimed(tmp_path, monkeypatch):
    (tmp_path / "levelbounce.pid").write_text("424242")
    monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: False))

    lock = check_single_instance("levelbounce", str(tmp_path))

    assert lock is not None
    assert lock.lock_file.read_text() == str(os.getpid())
    lock.release()


def test_garbage_lock_file_is_replaced(tmp_path):
    (tmp_path / "levelbounce.pid").write_text("not-a-pid")
    lock = SingleInstanceLock("levelbounce", lock_dir=str(tmp_path))
    assert lock.acquire()
    lock.release()


def test_own_pid_is_not_a_conflict(tmp_path):
    (tmp_path / "levelbounce.pid").write_text(str(os.getpid()))
    lock = SingleInstanceLock("levelbounce", lock_dir=str(tmp_path))
    assert lock.acquire()
    lock.release()


def test_context_manager(tmp_path, monkeypatch):
    with SingleInstanceLock("levelbounce", lock_dir=str(tmp_path)) as lock:
        assert lock.lock_file.exists()
    assert not lock.lock_file.exists()

    (tmp_path / "levelbounce.pid").write_text("424242")
    monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: True))
    with pytest.raises(RuntimeError):
        with SingleInstanceLock("levelbounce", lock_dir=str(tmp_path)):
            pass
