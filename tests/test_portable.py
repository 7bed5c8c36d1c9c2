"""Tests for the psutil backend, run against the test process itself."""

import os
import threading
from unittest.mock import patch

import psutil
import pytest

from sysprobe.errors import (
    EnumerationError,
    PermissionDenied,
    ProcessNotFound,
    TransientReadFailure,
)
from sysprobe.portable import STATUS_NAMES, PsutilSource, _read_error, _status_names, to_ticks
from sysprobe.process import ProcessStatus, RefreshOptions
from sysprobe.refresh import RefreshCoordinator


@pytest.fixture
def source() -> PsutilSource:
    return PsutilSource()


class TestErrorMapping:
    """psutil exceptions map onto ReadError kinds."""

    def test_no_such_process(self) -> None:
        assert isinstance(_read_error(5, psutil.NoSuchProcess(5)), ProcessNotFound)

    def test_zombie_is_transient(self) -> None:
        err = _read_error(5, psutil.ZombieProcess(5))
        assert isinstance(err, TransientReadFailure)

    def test_access_denied(self) -> None:
        assert isinstance(_read_error(5, psutil.AccessDenied(5)), PermissionDenied)

    def test_status_names(self) -> None:
        assert STATUS_NAMES[psutil.STATUS_RUNNING] is ProcessStatus.RUN
        assert STATUS_NAMES[psutil.STATUS_ZOMBIE] is ProcessStatus.ZOMBIE

    def test_status_names_only_use_known_constants(self) -> None:
        known = {getattr(psutil, name) for name in dir(psutil) if name.startswith("STATUS_")}
        assert set(STATUS_NAMES) <= known

    def test_status_names_skip_missing_constant(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delattr(psutil, "STATUS_PARKED", raising=False)
        names = _status_names()
        assert names[psutil.STATUS_RUNNING] is ProcessStatus.RUN
        assert ProcessStatus.PARKED not in names.values()

    def test_to_ticks(self) -> None:
        assert to_ticks(1.234) == 123


class TestPsutilSource:
    """Reads of the current process."""

    def test_enumerate_includes_self(self, source: PsutilSource) -> None:
        assert os.getpid() in source.enumerate_identifiers()

    def test_enumerate_failure(self, source: PsutilSource) -> None:
        with patch("sysprobe.portable.psutil.pids", side_effect=OSError("boom")):
            with pytest.raises(EnumerationError):
                source.enumerate_identifiers()

    def test_read_snapshot_self(self, source: PsutilSource) -> None:
        snap = source.read_snapshot(os.getpid(), RefreshOptions.everything())
        assert snap.pid == os.getpid()
        assert snap.name
        assert snap.ticks is not None
        assert snap.memory > 0
        assert snap.cmd
        assert snap.handle is None
        assert snap.start_time_ticks == source.read_identity(os.getpid())

    def test_missing_pid(self, source: PsutilSource) -> None:
        with patch("sysprobe.portable.psutil.Process", side_effect=psutil.NoSuchProcess(4242)):
            with pytest.raises(ProcessNotFound):
                source.read_snapshot(4242, RefreshOptions.nothing())
            assert source.read_identity(4242) is None

    def test_threads_listed(self, source: PsutilSource) -> None:
        started = threading.Event()
        stop = threading.Event()
        native = []

        def worker() -> None:
            native.append(threading.get_native_id())
            started.set()
            stop.wait(5)

        t = threading.Thread(target=worker)
        t.start()
        try:
            started.wait(5)
            tids = source.enumerate_tasks(os.getpid())
            assert native[0] in tids
            assert os.getpid() not in tids
            opts = RefreshOptions.nothing().with_cpu()
            snap = source.read_task_snapshot(os.getpid(), native[0], opts)
            assert snap.parent == os.getpid()
            assert snap.ticks is not None
        finally:
            stop.set()
            t.join()

    def test_system_wide(self, source: PsutilSource) -> None:
        times = source.read_cpu_times()
        assert times.total >= times.busy >= 0
        per_core = source.read_per_cpu_times()
        assert len(per_core) == psutil.cpu_count()
        assert all(core.total >= core.busy >= 0 for core in per_core)
        assert source.cpu_count() >= 1
        assert source.uptime() > 0
        assert source.probe_alive(os.getpid())

    def test_refresh_self(self, source: PsutilSource) -> None:
        coord = RefreshCoordinator(source)
        assert coord.refresh_some([os.getpid()], RefreshOptions.default()) == 1
        record = coord.table[os.getpid()]
        assert record.exists
        assert record.start_time > 0

    @pytest.mark.parametrize("method", ["memory_info", "cpu_times"])
    def test_denied_usage_read_keeps_process(self, source: PsutilSource, method: str) -> None:
        pid = os.getpid()
        with patch.object(psutil.Process, method, side_effect=psutil.AccessDenied(pid)):
            snap = source.read_snapshot(pid, RefreshOptions.default())
            coord = RefreshCoordinator(source)
            assert coord.refresh_some([pid], RefreshOptions.default()) == 1

        assert snap.name
        if method == "memory_info":
            assert snap.memory is None
            assert snap.ticks is not None
        else:
            assert snap.ticks is None
            assert snap.memory > 0
        assert pid in coord.table
        assert coord.last_stats.kept == 0


class TestThreadCache:
    """Thread listings are dropped once their process is gone."""

    def test_pruned_on_enumeration(self, source: PsutilSource) -> None:
        pid = os.getpid()
        source.enumerate_tasks(pid)
        source._threads[999_999] = {}

        with patch("sysprobe.portable.psutil.pids", return_value=[pid]):
            assert source.enumerate_identifiers() == [pid]

        assert list(source._threads) == [pid]

    def test_dropped_when_process_exits(self, source: PsutilSource) -> None:
        source._threads[4242] = {}
        with patch("sysprobe.portable.psutil.Process", side_effect=psutil.NoSuchProcess(4242)):
            with pytest.raises(ProcessNotFound):
                source.read_snapshot(4242, RefreshOptions.default())
        assert 4242 not in source._threads

    def test_full_refresh_forgets_exited_process(self, source: PsutilSource) -> None:
        pid = os.getpid()
        coord = RefreshCoordinator(source)
        coord.refresh_some([pid], RefreshOptions.nothing().with_tasks())
        assert pid in source._threads

        with patch("sysprobe.portable.psutil.pids", return_value=[]):
            coord.refresh_all(RefreshOptions.nothing())

        assert source._threads == {}
