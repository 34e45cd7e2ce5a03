# pipewrap/tests/test_retention.py
import os
import threading

import pytest

from conftest import levels
from pipewrap.storage import retention
from pipewrap.storage.retention import RetentionManager, enforce, scan_directory

MB = 1024 * 1024


def make_file(path, size, mtime):
    path.write_bytes(b"\0" * size)
    os.utime(path, (mtime, mtime))
    return path


def test_deletes_only_the_oldest_completed_file(tmp_path):
    old = make_file(tmp_path / "eth0.1", MB, 100)
    mid = make_file(tmp_path / "eth0.2", MB, 200)
    new = make_file(tmp_path / "eth0.3", MB, 300)
    active = make_file(tmp_path / "eth0.4", MB, 400)

    removed = enforce(tmp_path, 2 * MB, active)

    assert removed == old
    assert not old.exists()
    assert mid.exists() and new.exists() and active.exists()


def test_never_deletes_the_active_file(tmp_path):
    active = make_file(tmp_path / "eth0.0", MB, 50)
    others = [make_file(tmp_path / f"eth0.{i}", MB, 100 * i) for i in range(1, 4)]

    assert enforce(tmp_path, MB, active) is None
    assert active.exists()
    assert all(p.exists() for p in others)


def test_active_path_may_be_given_as_string(tmp_path):
    active = make_file(tmp_path / "a", MB, 50)
    make_file(tmp_path / "b", MB, 100)
    assert enforce(str(tmp_path), MB, str(active)) is None
    assert active.exists()


def test_noop_under_threshold(tmp_path):
    files = [make_file(tmp_path / f"f{i}", 1000, 100 + i) for i in range(3)]
    assert enforce(tmp_path, 3000, None) is None
    assert all(p.exists() for p in files)


def test_converges_by_deleting_oldest_first(tmp_path):
    files = [make_file(tmp_path / f"f{i}", MB, 100 + i) for i in range(6)]
    active = files[-1]
    limit = int(2.5 * MB)

    removed = []
    for _ in range(10):
        total, _ = scan_directory(tmp_path)
        if total <= limit:
            break
        removed.append(enforce(tmp_path, limit, active))

    assert removed == files[:4]
    assert sorted(os.listdir(tmp_path)) == ["f4", "f5"]


def test_same_second_files_are_removed_in_creation_order(tmp_path):
    first = make_file(tmp_path / "eth0.20240101120000.pcap", 10, 100)
    second = make_file(tmp_path / "eth0.20240101120000-1.pcap", 10, 100)
    third = make_file(tmp_path / "eth0.20240101120000-2.pcap", 10, 100)

    assert enforce(tmp_path, 5) == first
    assert enforce(tmp_path, 5) == second
    assert third.exists()


def test_scan_is_not_recursive(tmp_path):
    sub = tmp_path / "nested"
    sub.mkdir()
    make_file(sub / "big", 5 * MB, 10)
    make_file(tmp_path / "small", 100, 20)

    total, files = scan_directory(tmp_path)
    assert total == 100
    assert [p.name for _, p in files] == ["small"]
    assert enforce(tmp_path, MB, None) is None


def test_vanished_target_is_tolerated(tmp_path, monkeypatch):
    make_file(tmp_path / "a", MB, 100)
    make_file(tmp_path / "b", MB, 200)

    def gone(path):
        raise FileNotFoundError(path)

    monkeypatch.setattr(retention.os, "remove", gone)
    assert enforce(tmp_path, MB, None) is None


def test_scan_failure_raises(tmp_path):
    with pytest.raises(OSError):
        enforce(tmp_path / "missing", MB, None)


def test_manager_logs_scan_failure(tmp_path, log_messages):
    manager = RetentionManager(tmp_path / "missing", MB)
    assert manager.trigger() is True
    manager.wait(5)
    assert manager.runs == 1
    assert levels(log_messages, "WARNING")


def test_manager_reads_active_path_when_running(tmp_path):
    active = make_file(tmp_path / "a", MB, 50)
    older = make_file(tmp_path / "b", MB, 100)
    manager = RetentionManager(tmp_path, MB, active_path_getter=lambda: active)
    manager.trigger()
    manager.wait(5)

    assert active.exists()
    assert older.exists()
    assert manager.removed == 0


def test_manager_skips_while_a_run_is_in_flight(tmp_path, monkeypatch):
    release = threading.Event()
    entered = threading.Event()

    def slow_enforce(directory, max_bytes, active_path=None):
        entered.set()
        release.wait(5)
        return None

    monkeypatch.setattr(retention, "enforce", slow_enforce)
    manager = RetentionManager(tmp_path, MB)

    assert manager.trigger() is True
    assert entered.wait(5)
    assert manager.trigger() is False
    assert manager.skipped == 1

    release.set()
    manager.wait(5)
    assert manager.trigger() is True
    manager.wait(5)
    assert manager.runs == 2
