"""Interface between the refresh engine and an OS-specific data source."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from sysprobe.governor import CachedHandle
from sysprobe.process import ProcessStatus, RefreshOptions, TickSample


@dataclass
class RawProcessSnapshot:
    """One read of one process, as the backend saw it.

    Optional fields are None when the corresponding option was off or the
    data was not accessible; the record then keeps what it had.
    """

    pid: int
    start_time_ticks: int
    name: str = ""
    parent: int | None = None
    status: ProcessStatus = ProcessStatus.UNKNOWN
    status_code: int = 0
    ticks: TickSample | None = None
    memory: int | None = None
    virtual_memory: int | None = None
    read_bytes: int | None = None
    written_bytes: int | None = None
    exe: Path | None = None
    cmd: list[str] | None = None
    environ: list[str] | None = None
    cwd: Path | None = None
    root: Path | None = None
    uids: tuple[int, int] | None = None  # (real, effective)
    gids: tuple[int, int] | None = None  # (real, effective)
    handle: CachedHandle | None = field(default=None, repr=False)

    def discard(self) -> None:
        """Close a handle this snapshot acquired but nobody adopted."""
        if self.handle is not None:
            self.handle.close()
            self.handle = None


@dataclass(frozen=True)
class CpuTimes:
    """System-wide aggregate scheduler ticks."""

    busy: int
    total: int


class SnapshotSource(Protocol):
    """What a platform backend must provide."""

    clock_ticks: int

    def enumerate_identifiers(self) -> list[int]:
        """List visible pids. Raises EnumerationError if that fails outright."""
        ...

    def read_identity(self, pid: int, handle: CachedHandle | None = None) -> int | None:
        """Cheap identity-marker read, None if it can't be determined."""
        ...

    def read_snapshot(
        self,
        pid: int,
        options: RefreshOptions,
        handle: CachedHandle | None = None,
    ) -> RawProcessSnapshot:
        """Full read honoring `options`. Raises a ReadError subclass on failure."""
        ...

    def probe_alive(self, pid: int) -> bool: ...

    def enumerate_tasks(self, pid: int) -> list[int]:
        """Thread ids of `pid`, excluding the main thread."""
        ...

    def read_task_snapshot(self, pid: int, tid: int, options: RefreshOptions) -> RawProcessSnapshot:
        ...

    def read_cpu_times(self) -> CpuTimes | None: ...

    def read_per_cpu_times(self) -> list[CpuTimes]:
        """One aggregate per logical core; empty if the platform has none."""
        ...

    def cpu_count(self) -> int: ...

    def boot_time(self) -> float: ...

    def uptime(self) -> float: ...
