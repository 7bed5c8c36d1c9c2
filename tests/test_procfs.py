"""Tests for the /proc backend against a fake procfs tree."""

import os
from pathlib import Path

import pytest

from conftest import write_proc_stat, write_system_stat
from sysprobe.errors import EnumerationError, MalformedData, ProcessNotFound
from sysprobe.governor import ResourceGovernor
from sysprobe.process import ProcessStatus, RefreshOptions, UpdateKind
from sysprobe.procfs import (
    ProcfsSource,
    parse_cpu_times,
    parse_io,
    parse_null_separated,
    parse_per_cpu_times,
    parse_stat_file,
    parse_uid_gid,
)
from sysprobe.refresh import RefreshCoordinator
from sysprobe.source import CpuTimes


@pytest.fixture
def proc_root(tmp_path: Path) -> Path:
    root = tmp_path / "proc"
    write_system_stat(root)
    return root


@pytest.fixture
def governor() -> ResourceGovernor:
    return ResourceGovernor(budget=8)


class TestParsers:
    """Tests for the pure parsing helpers."""

    def test_stat_name_with_spaces_and_parens(self) -> None:
        parts = parse_stat_file("42 (my (odd) name) S 1 42 42")
        assert parts == ["42", "my (odd) name", "S", "1", "42", "42"]

    def test_stat_malformed(self) -> None:
        assert parse_stat_file("garbage") is None
        assert parse_stat_file("42 no-paren S") is None

    def test_null_separated(self) -> None:
        assert parse_null_separated(b"python\0-m\0\0pytest\0") == ["python", "-m", "pytest"]
        assert parse_null_separated(b"") == []

    def test_uid_gid(self) -> None:
        text = "Name:\tbash\nUid:\t1000\t1001\t1000\t1000\nGid:\t100\t101\t100\t100\n"
        assert parse_uid_gid(text) == ((1000, 1001), (100, 101))
        assert parse_uid_gid("Name: x\n") == (None, None)

    def test_io(self) -> None:
        text = "rchar: 10\nwchar: 20\nread_bytes: 4096\nwrite_bytes: 8192\n"
        assert parse_io(text) == (4096, 8192)

    def test_cpu_times(self) -> None:
        stat = "cpu  10 2 3 100 5 1 1 1 0 0\ncpu0 10 2 3 100 5 1 1 1 0 0\n"
        assert parse_cpu_times(stat) == CpuTimes(busy=18, total=123)
        assert parse_cpu_times("intr 1\n") is None

    def test_per_cpu_times(self) -> None:
        stat = (
            "cpu  30 0 0 170 0 0 0 0 0 0\n"
            "cpu0 10 0 0 90 0 0 0 0 0 0\n"
            "cpu1 20 0 0 80 0 0 0 0 0 0\n"
            "intr 1\n"
        )
        assert parse_per_cpu_times(stat) == [
            CpuTimes(busy=10, total=100),
            CpuTimes(busy=20, total=100),
        ]
        assert parse_per_cpu_times("cpu  1 0 0 1\n") == []


class TestProcfsSource:
    """Tests for reads against a fake /proc."""

    def test_enumerate(self, proc_root: Path, governor: ResourceGovernor) -> None:
        write_proc_stat(proc_root, 1)
        write_proc_stat(proc_root, 200)
        (proc_root / "self").mkdir()
        source = ProcfsSource(proc_root, governor)
        assert sorted(source.enumerate_identifiers()) == [1, 200]

    def test_enumerate_missing_root(self, tmp_path: Path, governor: ResourceGovernor) -> None:
        source = ProcfsSource(tmp_path / "nope", governor)
        with pytest.raises(EnumerationError):
            source.enumerate_identifiers()

    def test_read_snapshot_fields(self, proc_root: Path, governor: ResourceGovernor) -> None:
        write_proc_stat(proc_root, 7, name="my daemon", state="R", ppid=1, utime=30, stime=12,
                        starttime=4321, vsize=65536, rss=3)
        base = proc_root / "7"
        (base / "cmdline").write_bytes(b"/usr/bin/daemon\0--flag\0")
        (base / "environ").write_bytes(b"HOME=/root\0PATH=/bin\0")
        (base / "io").write_text("read_bytes: 100\nwrite_bytes: 200\n")
        (base / "status").write_text("Uid:\t0\t0\t0\t0\nGid:\t0\t0\t0\t0\n")
        os.symlink("/usr/bin/daemon", base / "exe")
        os.symlink("/var/lib", base / "cwd")

        source = ProcfsSource(proc_root, governor)
        snap = source.read_snapshot(7, RefreshOptions.everything())

        assert snap.name == "my daemon"
        assert snap.status is ProcessStatus.RUN
        assert snap.status_code == ord("R")
        assert snap.parent == 1
        assert snap.start_time_ticks == 4321
        assert snap.ticks.user == 30 and snap.ticks.system == 12
        assert snap.memory == 3 * source.page_size
        assert snap.virtual_memory == 65536
        assert (snap.read_bytes, snap.written_bytes) == (100, 200)
        assert snap.cmd == ["/usr/bin/daemon", "--flag"]
        assert snap.environ == ["HOME=/root", "PATH=/bin"]
        assert snap.exe == Path("/usr/bin/daemon")
        assert snap.cwd == Path("/var/lib")
        assert snap.root is None
        assert snap.uids == (0, 0)
        assert snap.handle is not None
        snap.discard()
        assert governor.in_use == 0

    def test_options_limit_reads(self, proc_root: Path, governor: ResourceGovernor) -> None:
        write_proc_stat(proc_root, 7, utime=30)
        (proc_root / "7" / "cmdline").write_bytes(b"x\0")
        source = ProcfsSource(proc_root, governor, cache_handles=False)

        snap = source.read_snapshot(7, RefreshOptions.nothing())
        assert snap.ticks is None
        assert snap.memory is None
        assert snap.cmd is None
        assert snap.handle is None

    def test_missing_process(self, proc_root: Path, governor: ResourceGovernor) -> None:
        source = ProcfsSource(proc_root, governor)
        with pytest.raises(ProcessNotFound):
            source.read_snapshot(999, RefreshOptions.nothing())
        assert governor.in_use == 0
        assert source.read_identity(999) is None
        assert not source.probe_alive(999)

    def test_malformed_stat_releases_handle(
        self, proc_root: Path, governor: ResourceGovernor
    ) -> None:
        (proc_root / "8").mkdir()
        (proc_root / "8" / "stat").write_text("8 (broken) S 1\n")
        source = ProcfsSource(proc_root, governor)
        with pytest.raises(MalformedData):
            source.read_snapshot(8, RefreshOptions.nothing())
        assert governor.in_use == 0

    def test_cached_handle_reused(self, proc_root: Path, governor: ResourceGovernor) -> None:
        path = write_proc_stat(proc_root, 7, utime=1)
        source = ProcfsSource(proc_root, governor)
        first = source.read_snapshot(7, RefreshOptions.nothing().with_cpu())

        write_proc_stat(proc_root, 7, utime=5)
        second = source.read_snapshot(7, RefreshOptions.nothing().with_cpu(), first.handle)

        assert second.handle is first.handle
        assert second.ticks.user == 5
        assert source.read_identity(7, first.handle) == 1000
        assert governor.in_use == 1
        first.handle.close()
        assert path.exists()

    def test_tasks(self, proc_root: Path, governor: ResourceGovernor) -> None:
        write_proc_stat(proc_root, 7)
        task_dir = proc_root / "7" / "task"
        write_proc_stat(proc_root, 7, base=task_dir / "7")
        write_proc_stat(proc_root, 8, name="worker", utime=4, base=task_dir / "8")
        source = ProcfsSource(proc_root, governor)

        assert source.enumerate_tasks(7) == [8]
        snap = source.read_task_snapshot(7, 8, RefreshOptions.nothing().with_cpu())
        assert snap.pid == 8
        assert snap.parent == 7
        assert snap.name == "worker"
        assert snap.ticks.user == 4
        assert source.enumerate_tasks(99) == []

    def test_system_wide(self, proc_root: Path, governor: ResourceGovernor) -> None:
        source = ProcfsSource(proc_root, governor)
        assert source.cpu_count() == 2
        assert source.boot_time() == 1_700_000_000.0
        assert source.uptime() == pytest.approx(5000.25)
        assert source.read_cpu_times() == CpuTimes(busy=100, total=1000)
        assert source.read_per_cpu_times() == [CpuTimes(busy=50, total=500)] * 2


class TestProcfsRefresh:
    """Refresh cycles against a fake tree."""

    def test_pid_reuse_detected(self, proc_root: Path, governor: ResourceGovernor) -> None:
        write_proc_stat(proc_root, 5, starttime=100, utime=500)
        coord = RefreshCoordinator(ProcfsSource(proc_root, governor))
        opts = RefreshOptions.nothing().with_cpu()
        coord.refresh_all(opts)
        assert coord.table[5].stat_handle is not None

        # Same pid, new process: the kernel rewrites stat with a new start time
        write_proc_stat(proc_root, 5, name="other", starttime=900, utime=1)
        coord.refresh_all(opts)

        record = coord.table[5]
        assert record.name == "other"
        assert record.start_time_ticks == 900
        assert record.old_ticks is None
        assert record.cpu_usage == 0.0
        assert governor.in_use == 1

    def test_exited_process_purged_and_handle_released(
        self, proc_root: Path, governor: ResourceGovernor
    ) -> None:
        write_proc_stat(proc_root, 5)
        write_proc_stat(proc_root, 6)
        coord = RefreshCoordinator(ProcfsSource(proc_root, governor), workers=2)
        opts = RefreshOptions.default().with_user(UpdateKind.ALWAYS)
        assert coord.refresh_all(opts) == 2
        assert governor.in_use == 2

        (proc_root / "6" / "stat").unlink()
        (proc_root / "6").rmdir()
        assert coord.refresh_all(opts) == 1
        assert coord.table.pids() == {5}
        assert governor.in_use == 1

        coord.table.clear()
        assert governor.in_use == 0
