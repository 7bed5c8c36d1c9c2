"""The caller-facing handle: one process table plus system-wide readings."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import psutil
import structlog

from sysprobe.cpu import GlobalCpuUsage
from sysprobe.governor import ResourceGovernor, default_governor, set_open_files_limit
from sysprobe.process import ProcessRecord, RefreshOptions
from sysprobe.refresh import RefreshCoordinator, RefreshStats
from sysprobe.source import SnapshotSource
from sysprobe.table import ProcessTable

if TYPE_CHECKING:
    from sysprobe.config import Config

log = structlog.get_logger()


@dataclass(frozen=True)
class MemoryInfo:
    """RAM and swap, in bytes."""

    total: int
    available: int
    used: int
    free: int
    swap_total: int
    swap_used: int
    swap_free: int


@dataclass(frozen=True)
class LoadAverage:
    one: float
    five: float
    fifteen: float


def select_source(
    backend: str = "auto",
    governor: ResourceGovernor | None = None,
    proc_root: Path = Path("/proc"),
) -> SnapshotSource:
    """Build the snapshot source named by `backend`.

    "auto" uses procfs when it is mounted at `proc_root` and psutil otherwise.
    """
    if backend == "auto":
        backend = "procfs" if (proc_root / "self" / "stat").exists() else "psutil"
    if backend == "procfs":
        from sysprobe.procfs import ProcfsSource

        return ProcfsSource(root=proc_root, governor=governor)
    if backend == "psutil":
        from sysprobe.portable import PsutilSource

        return PsutilSource()
    raise ValueError(f"Unknown backend: {backend!r}")


class System:
    """A refreshable view of the processes on this host.

    Args:
        source: where process data comes from; picked automatically if None.
        workers: threads used to read processes during a refresh.
    """

    def __init__(self, source: SnapshotSource | None = None, workers: int = 1) -> None:
        self.source = source if source is not None else select_source()
        self.table = ProcessTable()
        self._coordinator = RefreshCoordinator(self.source, self.table, workers=workers)
        self._global_cpu = GlobalCpuUsage()
        self._core_cpu: list[GlobalCpuUsage] = []
        self._closed = False

    @classmethod
    def from_config(cls, config: Config) -> System:
        """Build a System honoring `[refresh]` settings."""
        if config.refresh.open_files_limit >= 0:
            set_open_files_limit(config.refresh.open_files_limit)
        governor = default_governor()
        source = select_source(config.refresh.backend, governor=governor)
        log.debug(
            "system_created",
            backend=type(source).__name__,
            workers=config.refresh.workers,
            handle_budget=governor.budget,
        )
        return cls(source, workers=config.refresh.workers)

    # ─────────────────────────────────────────────────────────────────────────
    # Processes
    # ─────────────────────────────────────────────────────────────────────────

    def refresh_all(self, options: RefreshOptions | None = None) -> int:
        """Refresh every process, dropping the ones that exited.

        Returns the number of processes successfully read.
        """
        return self._coordinator.refresh_all(options or RefreshOptions.default())

    def refresh_some(self, pids: Iterable[int], options: RefreshOptions | None = None) -> int:
        """Refresh only `pids`. Exited processes are flagged, not removed."""
        return self._coordinator.refresh_some(pids, options or RefreshOptions.default())

    def process(self, pid: int) -> ProcessRecord | None:
        return self.table.get(pid)

    def processes(self) -> dict[int, ProcessRecord]:
        return dict(self.table.items())

    def processes_by_name(self, name: str) -> list[ProcessRecord]:
        """Records whose name contains `name`.

        On Linux the kernel truncates names to 15 characters, and a name is not
        always the executable's file name.
        """
        return [rec for rec in self.table.values() if name in rec.name]

    def processes_by_exact_name(self, name: str) -> list[ProcessRecord]:
        return [rec for rec in self.table.values() if rec.name == name]

    @property
    def last_stats(self) -> RefreshStats:
        return self._coordinator.last_stats

    # ─────────────────────────────────────────────────────────────────────────
    # System-wide
    # ─────────────────────────────────────────────────────────────────────────

    def refresh_cpu(self) -> float:
        """Sample aggregate and per-core counters; returns overall usage since the last call."""
        per_core = self.source.read_per_cpu_times()
        if len(per_core) != len(self._core_cpu):
            # Cores went on- or offline; every core starts a new baseline.
            self._core_cpu = [GlobalCpuUsage() for _ in per_core]
        for core, times in zip(self._core_cpu, per_core):
            core.update(times)
        return self._global_cpu.update(self.source.read_cpu_times())

    def global_cpu_usage(self) -> float:
        return self._global_cpu.usage

    def cpu_usages(self) -> list[float]:
        """Usage of each core between the last two refresh_cpu() calls, 0-100."""
        return [core.usage for core in self._core_cpu]

    def cpu_count(self) -> int:
        return max(1, self.source.cpu_count())

    def refresh_memory(self) -> MemoryInfo:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return MemoryInfo(
            total=vm.total,
            available=vm.available,
            used=vm.used,
            free=vm.free,
            swap_total=swap.total,
            swap_used=swap.used,
            swap_free=swap.free,
        )

    def load_average(self) -> LoadAverage:
        one, five, fifteen = psutil.getloadavg()
        return LoadAverage(one, five, fifteen)

    def boot_time(self) -> float:
        return self.source.boot_time()

    def uptime(self) -> float:
        return self.source.uptime()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Drop every record, releasing cached handles. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self.table.clear()

    def __enter__(self) -> System:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
