"""Shared test fixtures for sysprobe."""

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from sysprobe.errors import ProcessNotFound
from sysprobe.governor import CachedHandle
from sysprobe.process import ProcessStatus, RefreshOptions, TickSample
from sysprobe.source import CpuTimes, RawProcessSnapshot

BOOT_TIME = 1_700_000_000.0


@dataclass
class FakeProcess:
    """Scripted state of one process as a FakeSource reports it."""

    pid: int
    start: int = 1000  # Identity marker
    name: str = "proc"
    parent: int | None = 1
    user: int = 0
    system: int = 0
    memory: int = 4096
    virtual_memory: int = 8192
    read_bytes: int = 0
    written_bytes: int = 0
    exe: str | None = None
    cmd: list[str] | None = None
    environ: list[str] | None = None
    uids: tuple[int, int] | None = None
    status: ProcessStatus = ProcessStatus.SLEEP
    error: type[Exception] | None = None  # Raised by read_snapshot
    alive: bool = True  # What probe_alive answers
    tasks: dict[int, "FakeProcess"] = field(default_factory=dict)


class FakeSource:
    """In-memory SnapshotSource driven by test code.

    `processes` is what the "kernel" currently holds; tests mutate it between
    refreshes. Every read is recorded in `reads` as (pid, options).
    """

    clock_ticks = 100

    def __init__(self, *procs: FakeProcess, cpus: int = 1, total_step: int = 100) -> None:
        self.processes: dict[int, FakeProcess] = {p.pid: p for p in procs}
        self.cpus = cpus
        self.total_step = total_step  # Aggregate ticks per core between samples
        self.cpu_total = 0
        self.core_total = 0
        self.enumerate_fails = False
        self.enumerated: list[int] | None = None  # Override what enumeration returns
        self.reads: list[tuple[int, RefreshOptions]] = []
        self.identity_reads: list[int] = []

    def add(self, proc: FakeProcess) -> FakeProcess:
        self.processes[proc.pid] = proc
        return proc

    def enumerate_identifiers(self) -> list[int]:
        from sysprobe.errors import EnumerationError

        if self.enumerate_fails:
            raise EnumerationError("scripted failure")
        if self.enumerated is not None:
            return list(self.enumerated)
        return sorted(self.processes)

    def read_identity(self, pid: int, handle: CachedHandle | None = None) -> int | None:
        self.identity_reads.append(pid)
        proc = self.processes.get(pid)
        return proc.start if proc is not None else None

    def read_snapshot(
        self,
        pid: int,
        options: RefreshOptions,
        handle: CachedHandle | None = None,
    ) -> RawProcessSnapshot:
        self.reads.append((pid, options))
        proc = self.processes.get(pid)
        if proc is None:
            raise ProcessNotFound(pid, "not in fake table")
        if proc.error is not None:
            raise proc.error(pid, "scripted")
        return _snapshot(proc, options, parent=proc.parent)

    def probe_alive(self, pid: int) -> bool:
        proc = self.processes.get(pid)
        return proc is not None and proc.alive

    def enumerate_tasks(self, pid: int) -> list[int]:
        proc = self.processes.get(pid)
        return list(proc.tasks) if proc is not None else []

    def read_task_snapshot(self, pid: int, tid: int, options: RefreshOptions) -> RawProcessSnapshot:
        task = self.processes[pid].tasks.get(tid)
        if task is None:
            raise ProcessNotFound(tid, "no such task")
        return _snapshot(task, options, parent=pid)

    def read_cpu_times(self) -> CpuTimes | None:
        self.cpu_total += self.total_step * self.cpus
        return CpuTimes(busy=self.cpu_total // 2, total=self.cpu_total)

    def read_per_cpu_times(self) -> list[CpuTimes]:
        # Core i is busy i/cpus of the time, so each core reports a distinct usage.
        self.core_total += self.total_step
        return [
            CpuTimes(busy=self.core_total * i // self.cpus, total=self.core_total)
            for i in range(self.cpus)
        ]

    def cpu_count(self) -> int:
        return self.cpus

    def boot_time(self) -> float:
        return BOOT_TIME

    def uptime(self) -> float:
        return 5000.0


def _snapshot(proc: FakeProcess, options: RefreshOptions, parent: int | None) -> RawProcessSnapshot:
    snap = RawProcessSnapshot(
        pid=proc.pid,
        start_time_ticks=proc.start,
        name=proc.name,
        parent=parent,
        status=proc.status,
        status_code=ord("S"),
    )
    if options.cpu:
        snap.ticks = TickSample(user=proc.user, system=proc.system)
    if options.memory:
        snap.memory = proc.memory
        snap.virtual_memory = proc.virtual_memory
    if options.disk_usage:
        snap.read_bytes = proc.read_bytes
        snap.written_bytes = proc.written_bytes
    if options.exe.requested and proc.exe is not None:
        snap.exe = Path(proc.exe)
    if options.cmd.requested:
        snap.cmd = list(proc.cmd) if proc.cmd is not None else None
    if options.environ.requested:
        snap.environ = list(proc.environ) if proc.environ is not None else None
    if options.user.requested:
        snap.uids = proc.uids
    return snap


@pytest.fixture
def fake_source() -> FakeSource:
    """Two ordinary processes, pids 1 and 2."""
    return FakeSource(FakeProcess(1, name="init"), FakeProcess(2, name="worker"))


def write_proc_stat(
    root: Path,
    pid: int,
    *,
    name: str = "proc",
    state: str = "S",
    ppid: int = 1,
    utime: int = 0,
    stime: int = 0,
    starttime: int = 1000,
    vsize: int = 8192,
    rss: int = 2,
    base: Path | None = None,
) -> Path:
    """Write a /proc/<pid>/stat file in the kernel's layout under `root`."""
    directory = base if base is not None else root / str(pid)
    directory.mkdir(parents=True, exist_ok=True)
    # pid (comm) state ppid pgrp session tty tpgid flags minflt cminflt majflt
    # cmajflt utime stime cutime cstime priority nice threads itrealvalue
    # starttime vsize rss ...
    fields = [
        state, ppid, pid, pid, 0, -1, 4194560, 100, 0, 0, 0,
        utime, stime, 0, 0, 20, 0, 1, 0,
        starttime, vsize, rss, 18446744073709551615,
    ]
    line = f"{pid} ({name}) " + " ".join(str(f) for f in fields) + "\n"
    path = directory / "stat"
    path.write_text(line)
    return path


def write_system_stat(root: Path, *, user: int = 100, idle: int = 900, cpus: int = 2) -> None:
    """Write an aggregate /proc/stat with `cpus` per-core lines and a btime."""
    root.mkdir(parents=True, exist_ok=True)
    lines = [f"cpu  {user} 0 0 {idle} 0 0 0 0 0 0"]
    for i in range(cpus):
        lines.append(f"cpu{i} {user // cpus} 0 0 {idle // cpus} 0 0 0 0 0 0")
    lines.append("intr 12345")
    lines.append("btime 1700000000")
    (root / "stat").write_text("\n".join(lines) + "\n")
    (root / "uptime").write_text("5000.25 9000.00\n")


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point Path.home() at a temp dir and undo any logging setup afterwards."""
    import logging.handlers

    import structlog

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    yield home

    root = logging.getLogger()
    for handler in root.handlers[:]:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.WARNING)
    structlog.reset_defaults()
