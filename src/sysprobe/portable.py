"""Snapshot source backed by psutil, for platforms without procfs.

psutil reports times in seconds; they are converted into nominal ticks of
`1 / TICKS_PER_SECOND` so the refresh engine sees the same units everywhere.
No per-process handles are cached.
"""

from __future__ import annotations

import time
from pathlib import Path

import psutil
import structlog

from sysprobe.errors import (
    EnumerationError,
    PermissionDenied,
    ProcessNotFound,
    TransientReadFailure,
)
from sysprobe.governor import CachedHandle
from sysprobe.process import ProcessStatus, RefreshOptions, TickSample
from sysprobe.source import CpuTimes, RawProcessSnapshot

log = structlog.get_logger()

TICKS_PER_SECOND = 100

_STATUS_CONSTANTS = (
    ("STATUS_RUNNING", ProcessStatus.RUN),
    ("STATUS_SLEEPING", ProcessStatus.SLEEP),
    ("STATUS_DISK_SLEEP", ProcessStatus.DISK_SLEEP),
    ("STATUS_STOPPED", ProcessStatus.STOP),
    ("STATUS_TRACING_STOP", ProcessStatus.TRACING),
    ("STATUS_ZOMBIE", ProcessStatus.ZOMBIE),
    ("STATUS_DEAD", ProcessStatus.DEAD),
    ("STATUS_WAKE_KILL", ProcessStatus.WAKEKILL),
    ("STATUS_WAKING", ProcessStatus.WAKING),
    ("STATUS_IDLE", ProcessStatus.IDLE),
    ("STATUS_PARKED", ProcessStatus.PARKED),
)


def _status_names() -> dict[str, ProcessStatus]:
    # Not every psutil release or platform defines every constant.
    return {
        getattr(psutil, constant): status
        for constant, status in _STATUS_CONSTANTS
        if hasattr(psutil, constant)
    }


STATUS_NAMES = _status_names()


def to_ticks(seconds: float) -> int:
    return int(round(seconds * TICKS_PER_SECOND))


def _read_error(pid: int, e: psutil.Error) -> Exception:
    # ZombieProcess subclasses NoSuchProcess but the pid is still there.
    if isinstance(e, psutil.ZombieProcess):
        return TransientReadFailure(pid, "zombie")
    if isinstance(e, psutil.NoSuchProcess):
        return ProcessNotFound(pid, str(e))
    if isinstance(e, psutil.AccessDenied):
        return PermissionDenied(pid, str(e))
    return TransientReadFailure(pid, str(e))


class PsutilSource:
    """SnapshotSource using psutil's cross-platform process API."""

    clock_ticks = TICKS_PER_SECOND

    def __init__(self) -> None:
        self._boot_time = psutil.boot_time()
        # pid -> {tid: pthread} from the last enumerate_tasks() call
        self._threads: dict[int, dict[int, object]] = {}

    def enumerate_identifiers(self) -> list[int]:
        try:
            pids = psutil.pids()
        except (OSError, psutil.Error) as e:
            raise EnumerationError(str(e)) from e
        live = set(pids)
        for pid in [p for p in self._threads if p not in live]:
            del self._threads[pid]
        return pids

    def probe_alive(self, pid: int) -> bool:
        return psutil.pid_exists(pid)

    def _marker(self, proc: psutil.Process) -> int:
        return to_ticks(max(0.0, proc.create_time() - self._boot_time))

    def read_identity(self, pid: int, handle: CachedHandle | None = None) -> int | None:
        try:
            return self._marker(psutil.Process(pid))
        except psutil.Error:
            return None

    def read_snapshot(
        self,
        pid: int,
        options: RefreshOptions,
        handle: CachedHandle | None = None,
    ) -> RawProcessSnapshot:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                snap = RawProcessSnapshot(
                    pid=pid,
                    start_time_ticks=self._marker(proc),
                    name=proc.name(),
                    parent=proc.ppid() or None,
                    status=STATUS_NAMES.get(proc.status(), ProcessStatus.UNKNOWN),
                )
                self._fill(proc, snap, options)
        except psutil.Error as e:
            err = _read_error(pid, e)
            if isinstance(err, ProcessNotFound):
                self._threads.pop(pid, None)
            raise err from e
        return snap

    def _fill(self, proc: psutil.Process, snap: RawProcessSnapshot, options: RefreshOptions) -> None:
        """Optional reads; access problems leave the field unset."""
        if options.cpu:
            times = _best_effort(proc.cpu_times)
            if times is not None:
                snap.ticks = TickSample(user=to_ticks(times.user), system=to_ticks(times.system))
        if options.memory:
            mem = _best_effort(proc.memory_info)
            if mem is not None:
                snap.memory = mem.rss
                snap.virtual_memory = mem.vms
        if options.disk_usage and hasattr(proc, "io_counters"):
            io = _best_effort(proc.io_counters)
            if io is not None:
                snap.read_bytes = io.read_bytes
                snap.written_bytes = io.write_bytes
        if options.exe.requested:
            exe = _best_effort(proc.exe)
            snap.exe = Path(exe) if exe else None
        if options.cmd.requested:
            snap.cmd = _best_effort(proc.cmdline)
        if options.environ.requested:
            environ = _best_effort(proc.environ)
            if environ is not None:
                snap.environ = [f"{k}={v}" for k, v in environ.items()]
        if options.cwd.requested:
            cwd = _best_effort(proc.cwd)
            snap.cwd = Path(cwd) if cwd else None
        if options.user.requested and hasattr(proc, "uids"):
            uids = _best_effort(proc.uids)
            gids = _best_effort(proc.gids)
            if uids is not None:
                snap.uids = (uids.real, uids.effective)
            if gids is not None:
                snap.gids = (gids.real, gids.effective)

    def enumerate_tasks(self, pid: int) -> list[int]:
        try:
            threads = psutil.Process(pid).threads()
        except psutil.Error as e:
            log.debug("thread_list_failed", pid=pid, error=type(e).__name__)
            self._threads.pop(pid, None)
            return []
        self._threads[pid] = {t.id: t for t in threads if t.id != pid}
        return list(self._threads[pid])

    def read_task_snapshot(self, pid: int, tid: int, options: RefreshOptions) -> RawProcessSnapshot:
        thread = self._threads.get(pid, {}).get(tid)
        if thread is None:
            raise ProcessNotFound(tid, "thread not listed")
        snap = RawProcessSnapshot(pid=tid, start_time_ticks=0, parent=pid)
        if options.cpu:
            snap.ticks = TickSample(user=to_ticks(thread.user_time), system=to_ticks(thread.system_time))
        return snap

    def read_cpu_times(self) -> CpuTimes | None:
        return _cpu_times(psutil.cpu_times())

    def read_per_cpu_times(self) -> list[CpuTimes]:
        return [_cpu_times(times) for times in psutil.cpu_times(percpu=True)]

    def cpu_count(self) -> int:
        return psutil.cpu_count() or 1

    def boot_time(self) -> float:
        return self._boot_time

    def uptime(self) -> float:
        return max(0.0, time.time() - self._boot_time)


def _cpu_times(times) -> CpuTimes:
    total = sum(times)
    idle = times.idle + getattr(times, "iowait", 0.0)
    # guest time is already counted in user on Linux
    total -= getattr(times, "guest", 0.0) + getattr(times, "guest_nice", 0.0)
    return CpuTimes(busy=to_ticks(total - idle), total=to_ticks(total))


def _best_effort(call):
    try:
        return call()
    except (psutil.AccessDenied, psutil.ZombieProcess):
        return None
