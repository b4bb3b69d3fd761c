"""Tests for the PID file registry."""

import json
import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from acd.daemon.pidfile import DaemonRecord, PidRegistry
from acd.errors import DaemonAlreadyRunningError


class LivenessRegistry(PidRegistry):
    """PidRegistry whose notion of 'alive' is a fixed set of pids."""

    def __init__(self, alive=()):
        self.alive = set(alive)

    def is_process_running(self, pid: int) -> bool:
        return pid in self.alive


@pytest.fixture
def pid_file(tmp_path: Path) -> Path:
    return tmp_path / "cfg" / "daemon.pid"


class TestWriteAndRead:
    """Test atomic writes and tolerant reads."""

    def test_round_trip_record(self, pid_file: Path):
        registry = PidRegistry()
        registry.write(pid_file, DaemonRecord(pid=4321, port=3001, config_dir="/tmp/x"))

        record = registry.read_record(pid_file)
        assert record.pid == 4321
        assert record.port == 3001
        assert record.config_dir == "/tmp/x"
        assert registry.read(pid_file) == 4321

    def test_write_bare_pid(self, pid_file: Path):
        registry = PidRegistry()
        registry.write(pid_file, 77)
        assert registry.read(pid_file) == 77

    def test_token_never_written(self, pid_file: Path):
        PidRegistry().write(pid_file, DaemonRecord(pid=5, access_token="secret"))
        assert "secret" not in pid_file.read_text()
        assert "access_token" not in json.loads(pid_file.read_text())

    def test_no_temp_files_left(self, pid_file: Path):
        PidRegistry().write(pid_file, 10)
        PidRegistry().write(pid_file, 11)
        assert [p.name for p in pid_file.parent.iterdir()] == ["daemon.pid"]

    def test_overwrite(self, pid_file: Path):
        registry = PidRegistry()
        registry.write(pid_file, 10)
        registry.write(pid_file, 11)
        assert registry.read(pid_file) == 11

    def test_missing_file(self, pid_file: Path):
        assert PidRegistry().read(pid_file) is None

    def test_legacy_integer_content(self, pid_file: Path):
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("12345\n")
        assert PidRegistry().read(pid_file) == 12345

    @pytest.mark.parametrize("content", ["", "   ", "abc", "-5", "0", "true", "[1, 2]", '{"pid": "x"}', "{}"])
    def test_unusable_content_reads_as_none(self, pid_file: Path, content: str):
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text(content)
        assert PidRegistry().read(pid_file) is None


class TestCleanup:
    """Test conditional and unconditional removal."""

    def test_cleanup_matching_pid(self, pid_file: Path):
        registry = PidRegistry()
        registry.write(pid_file, 10)
        assert registry.cleanup(pid_file, 10) is True
        assert not pid_file.exists()

    def test_cleanup_leaves_other_pid(self, pid_file: Path):
        registry = PidRegistry()
        registry.write(pid_file, 10)
        assert registry.cleanup(pid_file, 11) is False
        assert registry.read(pid_file) == 10

    def test_cleanup_missing_file(self, pid_file: Path):
        assert PidRegistry().cleanup(pid_file, 10) is False

    def test_remove_missing_file(self, pid_file: Path):
        assert PidRegistry().remove(pid_file) is False


class TestPrepare:
    """Test single-instance claiming."""

    def test_claims_empty_slot(self, pid_file: Path):
        registry = LivenessRegistry()
        registry.prepare(pid_file, DaemonRecord(pid=50))
        assert registry.read(pid_file) == 50

    def test_refuses_live_holder(self, pid_file: Path):
        registry = LivenessRegistry(alive={40})
        registry.write(pid_file, 40)

        with pytest.raises(DaemonAlreadyRunningError) as exc_info:
            registry.prepare(pid_file, DaemonRecord(pid=50))

        assert exc_info.value.pid == 40
        assert registry.read(pid_file) == 40

    def test_replaces_stale_holder(self, pid_file: Path):
        registry = LivenessRegistry(alive=set())
        registry.write(pid_file, 40)
        registry.prepare(pid_file, DaemonRecord(pid=50))
        assert registry.read(pid_file) == 50

    def test_reclaims_own_record(self, pid_file: Path):
        registry = LivenessRegistry(alive={50})
        registry.write(pid_file, 50)
        registry.prepare(pid_file, DaemonRecord(pid=50, port=3100))
        assert registry.read_record(pid_file).port == 3100


class TestLiveness:
    """Test process liveness checks against real processes."""

    def test_current_process_is_running(self):
        assert PidRegistry().is_process_running(os.getpid()) is True

    def test_non_positive_pids(self):
        registry = PidRegistry()
        assert registry.is_process_running(0) is False
        assert registry.is_process_running(-1) is False

    @pytest.mark.posix
    @pytest.mark.skipif(sys.platform == "win32", reason="zombie reaping is POSIX only")
    def test_exited_child_is_not_running(self):
        process = subprocess.Popen([sys.executable, "-c", "pass"])
        registry = PidRegistry()

        deadline = time.monotonic() + 10
        running = True
        while running and time.monotonic() < deadline:
            running = registry.is_process_running(process.pid)
            if running:
                time.sleep(0.05)

        assert running is False
        process.wait()


class TestDaemonRecord:
    def test_uptime_non_negative(self):
        assert DaemonRecord(pid=1).uptime_seconds >= 0

    def test_naive_timestamp_treated_as_utc(self):
        record = DaemonRecord.model_validate({"pid": 1, "started_at": "2020-01-01T00:00:00"})
        assert record.uptime_seconds > 0
