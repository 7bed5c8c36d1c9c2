"""Process records, statuses and refresh options."""

from __future__ import annotations

import os
import signal
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sysprobe.cpu import ClockSample
    from sysprobe.governor import CachedHandle
    from sysprobe.source import RawProcessSnapshot
    from sysprobe.table import ProcessTable


class ProcessStatus(Enum):
    """Scheduler state of a process."""

    IDLE = "Idle"
    RUN = "Runnable"
    SLEEP = "Sleeping"
    STOP = "Stopped"
    ZOMBIE = "Zombie"
    DEAD = "Dead"
    TRACING = "Tracing"
    DISK_SLEEP = "UninterruptibleDiskSleep"
    WAKEKILL = "Wakekill"
    WAKING = "Waking"
    PARKED = "Parked"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


# Single-letter state codes from /proc/<pid>/stat
STATUS_CODES = {
    "R": ProcessStatus.RUN,
    "S": ProcessStatus.SLEEP,
    "I": ProcessStatus.IDLE,
    "D": ProcessStatus.DISK_SLEEP,
    "Z": ProcessStatus.ZOMBIE,
    "T": ProcessStatus.STOP,
    "t": ProcessStatus.TRACING,
    "X": ProcessStatus.DEAD,
    "x": ProcessStatus.DEAD,
    "K": ProcessStatus.WAKEKILL,
    "W": ProcessStatus.WAKING,
    "P": ProcessStatus.PARKED,
}


def status_from_code(code: str) -> tuple[ProcessStatus, int]:
    """Map a state letter to (status, raw code). Empty input is Unknown(0)."""
    if not code:
        return ProcessStatus.UNKNOWN, 0
    letter = code[0]
    return STATUS_CODES.get(letter, ProcessStatus.UNKNOWN), ord(letter)


class UpdateKind(Enum):
    """When an optional descriptive field gets (re)read."""

    NEVER = "never"
    ALWAYS = "always"
    ONLY_IF_NOT_SET = "only_if_not_set"

    @property
    def requested(self) -> bool:
        """True unless NEVER. Sources read a field when this is set."""
        return self is not UpdateKind.NEVER

    def needs_update(self, is_set: bool) -> bool:
        if self is UpdateKind.ALWAYS:
            return True
        if self is UpdateKind.ONLY_IF_NOT_SET:
            return not is_set
        return False


@dataclass(frozen=True)
class RefreshOptions:
    """Which sub-reads a refresh performs.

    Each toggle controls one of the more expensive reads so callers can trade
    completeness for latency. Identity, parent, name, status and start time
    are always read.
    """

    cpu: bool = False
    memory: bool = False
    disk_usage: bool = False
    tasks: bool = False
    cmd: UpdateKind = UpdateKind.NEVER
    environ: UpdateKind = UpdateKind.NEVER
    cwd: UpdateKind = UpdateKind.NEVER
    root: UpdateKind = UpdateKind.NEVER
    exe: UpdateKind = UpdateKind.NEVER
    user: UpdateKind = UpdateKind.NEVER

    @classmethod
    def nothing(cls) -> RefreshOptions:
        return cls()

    @classmethod
    def everything(cls) -> RefreshOptions:
        return cls(
            cpu=True,
            memory=True,
            disk_usage=True,
            tasks=True,
            cmd=UpdateKind.ONLY_IF_NOT_SET,
            environ=UpdateKind.ONLY_IF_NOT_SET,
            cwd=UpdateKind.ONLY_IF_NOT_SET,
            root=UpdateKind.ONLY_IF_NOT_SET,
            exe=UpdateKind.ONLY_IF_NOT_SET,
            user=UpdateKind.ONLY_IF_NOT_SET,
        )

    @classmethod
    def default(cls) -> RefreshOptions:
        """What a plain refresh reads: cpu, memory, disk usage, exe once, tasks."""
        return cls(
            cpu=True,
            memory=True,
            disk_usage=True,
            tasks=True,
            exe=UpdateKind.ONLY_IF_NOT_SET,
        )

    def resolve_for(self, record: ProcessRecord | None) -> RefreshOptions:
        """Turn ONLY_IF_NOT_SET into ALWAYS/NEVER for one existing record.

        With no record (first sighting or replacement) every requested field
        is unset, so the options are returned unchanged.
        """
        if record is None:
            return self

        def pick(kind: UpdateKind, is_set: bool) -> UpdateKind:
            return UpdateKind.ALWAYS if kind.needs_update(is_set) else UpdateKind.NEVER

        return replace(
            self,
            cmd=pick(self.cmd, bool(record.cmd)),
            environ=pick(self.environ, bool(record.environ)),
            cwd=pick(self.cwd, record.cwd is not None),
            root=pick(self.root, record.root is not None),
            exe=pick(self.exe, record.exe is not None),
            user=pick(self.user, record.user_id is not None),
        )

    def with_cpu(self) -> RefreshOptions:
        return replace(self, cpu=True)

    def without_cpu(self) -> RefreshOptions:
        return replace(self, cpu=False)

    def with_memory(self) -> RefreshOptions:
        return replace(self, memory=True)

    def without_memory(self) -> RefreshOptions:
        return replace(self, memory=False)

    def with_disk_usage(self) -> RefreshOptions:
        return replace(self, disk_usage=True)

    def without_disk_usage(self) -> RefreshOptions:
        return replace(self, disk_usage=False)

    def with_tasks(self) -> RefreshOptions:
        return replace(self, tasks=True)

    def without_tasks(self) -> RefreshOptions:
        return replace(self, tasks=False)

    def with_cmd(self, kind: UpdateKind = UpdateKind.ONLY_IF_NOT_SET) -> RefreshOptions:
        return replace(self, cmd=kind)

    def with_environ(self, kind: UpdateKind = UpdateKind.ONLY_IF_NOT_SET) -> RefreshOptions:
        return replace(self, environ=kind)

    def with_cwd(self, kind: UpdateKind = UpdateKind.ONLY_IF_NOT_SET) -> RefreshOptions:
        return replace(self, cwd=kind)

    def with_root(self, kind: UpdateKind = UpdateKind.ONLY_IF_NOT_SET) -> RefreshOptions:
        return replace(self, root=kind)

    def with_exe(self, kind: UpdateKind = UpdateKind.ONLY_IF_NOT_SET) -> RefreshOptions:
        return replace(self, exe=kind)

    def with_user(self, kind: UpdateKind = UpdateKind.ONLY_IF_NOT_SET) -> RefreshOptions:
        return replace(self, user=kind)


@dataclass(frozen=True)
class TickSample:
    """User and kernel scheduler ticks at one observation."""

    user: int
    system: int

    @property
    def total(self) -> int:
        return self.user + self.system


@dataclass(frozen=True)
class DiskUsage:
    """Bytes read/written since the previous refresh, and in total."""

    read_bytes: int
    total_read_bytes: int
    written_bytes: int
    total_written_bytes: int


@dataclass
class ProcessRecord:
    """Everything known about one tracked process identifier."""

    # ─────────────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────────────
    pid: int
    parent: int | None = None
    start_time_ticks: int = 0  # Identity marker, only compared for equality
    start_time: int = 0  # Seconds since epoch
    run_time: int = 0  # Seconds
    name: str = ""

    # ─────────────────────────────────────────────────────────────
    # CPU
    # ─────────────────────────────────────────────────────────────
    ticks: TickSample | None = None
    old_ticks: TickSample | None = None
    clock: ClockSample | None = field(default=None, repr=False)  # When `ticks` was taken
    old_clock: ClockSample | None = field(default=None, repr=False)
    cpu_usage: float = 0.0
    accumulated_cpu_time: int = 0  # Milliseconds of user + system time

    # ─────────────────────────────────────────────────────────────
    # Memory and disk
    # ─────────────────────────────────────────────────────────────
    memory: int = 0  # Resident bytes
    virtual_memory: int = 0  # Bytes
    read_bytes: int = 0
    written_bytes: int = 0
    old_read_bytes: int = 0
    old_written_bytes: int = 0

    # ─────────────────────────────────────────────────────────────
    # Descriptive
    # ─────────────────────────────────────────────────────────────
    exe: Path | None = None
    cmd: list[str] = field(default_factory=list)
    environ: list[str] = field(default_factory=list)
    cwd: Path | None = None
    root: Path | None = None
    user_id: int | None = None
    effective_user_id: int | None = None
    group_id: int | None = None
    effective_group_id: int | None = None
    status: ProcessStatus = ProcessStatus.UNKNOWN
    status_code: int = 0

    # ─────────────────────────────────────────────────────────────
    # Bookkeeping
    # ─────────────────────────────────────────────────────────────
    stat_handle: CachedHandle | None = field(default=None, repr=False)
    touched: bool = True
    exists: bool = True
    tasks: ProcessTable | None = field(default=None, repr=False)

    def disk_usage(self) -> DiskUsage:
        return DiskUsage(
            read_bytes=max(0, self.read_bytes - self.old_read_bytes),
            total_read_bytes=self.read_bytes,
            written_bytes=max(0, self.written_bytes - self.old_written_bytes),
            total_written_bytes=self.written_bytes,
        )

    def release_handle(self) -> None:
        """Close the cached data file, returning its budget."""
        handle, self.stat_handle = self.stat_handle, None
        if handle is not None:
            handle.close()

    def release(self) -> None:
        """Release every handle held by this record and its tasks."""
        self.release_handle()
        if self.tasks is not None:
            self.tasks.clear()

    def kill(self, sig: int = getattr(signal, "SIGKILL", signal.SIGTERM)) -> bool:
        """Send `sig` to the process; True if it was delivered.

        A record last seen gone is never signalled, since its pid may already
        belong to someone else.
        """
        if not self.exists:
            return False
        try:
            os.kill(self.pid, sig)
        except OSError:
            return False
        return True

    @classmethod
    def from_snapshot(
        cls,
        snap: RawProcessSnapshot,
        boot_time: float,
        uptime: float,
        clock_ticks: int,
    ) -> ProcessRecord:
        """Build a brand-new record; counters start from this snapshot's baseline."""
        record = cls(pid=snap.pid, start_time_ticks=snap.start_time_ticks)
        record.apply(snap, boot_time, uptime, clock_ticks)
        # A new identity has no usable previous sample.
        record.old_ticks = None
        record.old_read_bytes = record.read_bytes
        record.old_written_bytes = record.written_bytes
        return record

    def apply(
        self,
        snap: RawProcessSnapshot,
        boot_time: float,
        uptime: float,
        clock_ticks: int,
    ) -> None:
        """Update fields in place from a snapshot of the same identity.

        Fields the snapshot did not read (None) keep their previous values.
        """
        self.parent = snap.parent
        self.name = snap.name
        self.status = snap.status
        self.status_code = snap.status_code

        start_secs = snap.start_time_ticks // max(1, clock_ticks)
        self.start_time = int(boot_time) + start_secs
        self.run_time = max(0, int(uptime) - start_secs)

        if snap.ticks is not None:
            self.old_ticks = self.ticks
            self.ticks = snap.ticks
            self.accumulated_cpu_time = snap.ticks.total * 1000 // max(1, clock_ticks)

        if snap.memory is not None:
            self.memory = snap.memory
        if snap.virtual_memory is not None:
            self.virtual_memory = snap.virtual_memory
        if snap.read_bytes is not None:
            self.old_read_bytes = self.read_bytes
            self.read_bytes = snap.read_bytes
        if snap.written_bytes is not None:
            self.old_written_bytes = self.written_bytes
            self.written_bytes = snap.written_bytes

        if snap.exe is not None:
            self.exe = snap.exe
        if snap.cmd is not None:
            self.cmd = snap.cmd
        if snap.environ is not None:
            self.environ = snap.environ
        if snap.cwd is not None:
            self.cwd = snap.cwd
        if snap.root is not None:
            self.root = snap.root
        if snap.uids is not None:
            self.user_id, self.effective_user_id = snap.uids
        if snap.gids is not None:
            self.group_id, self.effective_group_id = snap.gids

        # The source hands back the handle it read through: ours if it still
        # works, a fresh one, or None on the uncached path.
        if snap.handle is not self.stat_handle:
            self.release_handle()
            self.stat_handle = snap.handle

        self.touched = True
        self.exists = True
