"""Refresh cycles: enumerate, reconcile and purge the process table.

Workers only read the table and talk to the source; each returns an outcome
describing what should happen to one pid. A single thread then merges the
outcomes, so table membership and record contents are never written
concurrently.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import structlog

from sysprobe.cpu import ClockSample, update_record_cpu
from sysprobe.errors import (
    EnumerationError,
    MalformedData,
    PermissionDenied,
    ProcessNotFound,
    ReadError,
    TransientReadFailure,
)
from sysprobe.process import ProcessRecord, RefreshOptions
from sysprobe.source import RawProcessSnapshot, SnapshotSource
from sysprobe.table import ProcessTable

log = structlog.get_logger()


# ─────────────────────────────────────────────────────────────────────────────
# Outcomes
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class Created:
    """First sighting of a pid."""

    snapshot: RawProcessSnapshot
    tasks: list[RawProcessSnapshot] | None = None


@dataclass
class Updated:
    """Same identity as the stored record; patch it in place."""

    snapshot: RawProcessSnapshot
    tasks: list[RawProcessSnapshot] | None = None


@dataclass
class Replaced:
    """The pid was reused by a different process; the record starts over."""

    snapshot: RawProcessSnapshot
    previous_marker: int
    tasks: list[RawProcessSnapshot] | None = None


@dataclass(frozen=True)
class Kept:
    """Read failed but the process is alive: keep the stale record."""

    pid: int
    reason: str


@dataclass(frozen=True)
class Skipped:
    """Data was malformed this cycle; the record is neither updated nor purged."""

    pid: int
    reason: str


@dataclass(frozen=True)
class Gone:
    """The process no longer exists."""

    pid: int


Outcome = Created | Updated | Replaced | Kept | Skipped | Gone


@dataclass
class RefreshStats:
    """Counters for the last refresh, mostly for logging and the CLI."""

    examined: int = 0
    created: int = 0
    updated: int = 0
    replaced: int = 0
    kept: int = 0
    skipped: int = 0
    gone: int = 0
    removed: list[int] = field(default_factory=list)
    elapsed_ms: int = 0


# ─────────────────────────────────────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────────────────────────────────────


class RefreshCoordinator:
    """Runs refresh cycles of `table` against `source`."""

    def __init__(
        self,
        source: SnapshotSource,
        table: ProcessTable | None = None,
        workers: int = 1,
    ) -> None:
        self.source = source
        self.table = table if table is not None else ProcessTable()
        self.workers = max(1, workers)
        self.last_stats = RefreshStats()
        self._boot_time = source.boot_time()
        self._cpu_count = max(1, source.cpu_count())

    def refresh_all(self, options: RefreshOptions) -> int:
        """Examine every visible pid and purge records nobody touched.

        Returns the number of pids successfully read. If the source cannot
        enumerate at all, the table is left unchanged and 0 is returned.
        """
        start = time.monotonic()
        try:
            pids = self.source.enumerate_identifiers()
        except EnumerationError as e:
            log.warning("enumeration_failed", error=str(e))
            self.last_stats = RefreshStats()
            return 0

        self.table.reset_touched()
        stats = self._run(pids, options)
        stats.removed = self.table.remove_untouched()
        return self._finish(stats, start, "all")

    def refresh_some(self, pids: Iterable[int], options: RefreshOptions) -> int:
        """Examine only `pids`. Never removes records.

        A pid found gone keeps its record with `exists` set to False until the
        next full pass.
        """
        start = time.monotonic()
        wanted = list(dict.fromkeys(pids))
        if not wanted:
            self.last_stats = RefreshStats()
            return 0
        stats = self._run(wanted, options)
        return self._finish(stats, start, "some")

    def _finish(self, stats: RefreshStats, start: float, kind: str) -> int:
        stats.elapsed_ms = int((time.monotonic() - start) * 1000)
        self.last_stats = stats
        log.debug(
            "refresh_complete",
            kind=kind,
            examined=stats.examined,
            created=stats.created,
            replaced=stats.replaced,
            kept=stats.kept,
            skipped=stats.skipped,
            removed=len(stats.removed),
            elapsed_ms=stats.elapsed_ms,
        )
        return stats.examined

    # ─────────────────────────────────────────────────────────────────────────
    # Parallel phase: read-only on the table
    # ─────────────────────────────────────────────────────────────────────────

    def _run(self, pids: list[int], options: RefreshOptions) -> RefreshStats:
        if self.workers > 1 and len(pids) > 1:
            with ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="sysprobe-refresh"
            ) as pool:
                outcomes = list(pool.map(lambda pid: self.examine(pid, options), pids))
        else:
            outcomes = [self.examine(pid, options) for pid in pids]
        return self._merge(outcomes, options)

    def examine(self, pid: int, options: RefreshOptions) -> Outcome:
        """Read one pid and classify it against the table. Never mutates the table."""
        existing = self.table.get(pid)
        try:
            if existing is None:
                snap = self.source.read_snapshot(pid, options)
                return Created(snap, self._read_tasks(pid, None, options))

            marker = self.source.read_identity(pid, existing.stat_handle)
            if marker is not None and marker != existing.start_time_ticks:
                return self._replace(pid, existing, options)

            snap = self.source.read_snapshot(
                pid, options.resolve_for(existing), existing.stat_handle
            )
            if snap.start_time_ticks != existing.start_time_ticks:
                # Identity changed between the cheap read and the full one.
                if snap.handle is not existing.stat_handle:
                    snap.discard()
                return self._replace(pid, existing, options)
            return Updated(snap, self._read_tasks(pid, existing, options))
        except ProcessNotFound:
            return Gone(pid)
        except MalformedData as e:
            log.warning("malformed_process_data", pid=pid, detail=e.detail)
            return Skipped(pid, e.detail)
        except (PermissionDenied, TransientReadFailure) as e:
            if self.source.probe_alive(pid):
                log.debug("process_read_failed", pid=pid, error=type(e).__name__)
                return Kept(pid, type(e).__name__)
            return Gone(pid)

    def _replace(self, pid: int, existing: ProcessRecord, options: RefreshOptions) -> Replaced:
        snap = self.source.read_snapshot(pid, options)
        return Replaced(snap, existing.start_time_ticks, self._read_tasks(pid, None, options))

    def _read_tasks(
        self,
        pid: int,
        existing: ProcessRecord | None,
        options: RefreshOptions,
    ) -> list[RawProcessSnapshot] | None:
        if not options.tasks:
            return None
        # Threads share their process's address space.
        task_options = options.without_tasks().without_memory()
        known = existing.tasks if existing is not None else None
        snaps = []
        for tid in self.source.enumerate_tasks(pid):
            current = known.get(tid) if known is not None else None
            try:
                snaps.append(
                    self.source.read_task_snapshot(pid, tid, task_options.resolve_for(current))
                )
            except ReadError:
                # Threads come and go quickly; a failed one is simply not listed.
                continue
        return snaps

    # ─────────────────────────────────────────────────────────────────────────
    # Merge phase: single-threaded
    # ─────────────────────────────────────────────────────────────────────────

    def _merge(self, outcomes: list[Outcome], options: RefreshOptions) -> RefreshStats:
        stats = RefreshStats()
        uptime = self.source.uptime()
        clock = ClockSample(
            times=self.source.read_cpu_times() if options.cpu else None,
            wall=time.monotonic(),
        )
        ticks = self.source.clock_ticks

        for outcome in outcomes:
            if isinstance(outcome, (Kept, Skipped)):
                # Protect the stale record from this cycle's purge.
                record = self.table.get(outcome.pid)
                if record is not None:
                    record.touched = True
                if isinstance(outcome, Kept):
                    stats.kept += 1
                else:
                    stats.skipped += 1
                continue

            if isinstance(outcome, Gone):
                record = self.table.get(outcome.pid)
                if record is not None:
                    record.exists = False
                stats.gone += 1
                continue

            snap = outcome.snapshot
            if isinstance(outcome, Updated):
                record = self.table[snap.pid]
                record.apply(snap, self._boot_time, uptime, ticks)
                stats.updated += 1
            else:
                record = ProcessRecord.from_snapshot(snap, self._boot_time, uptime, ticks)
                self.table.insert(record)
                if isinstance(outcome, Replaced):
                    stats.replaced += 1
                    log.debug(
                        "process_replaced",
                        pid=snap.pid,
                        name=snap.name,
                        old_marker=outcome.previous_marker,
                        new_marker=snap.start_time_ticks,
                    )
                else:
                    stats.created += 1

            stats.examined += 1
            if snap.ticks is not None:
                update_record_cpu(record, clock, self._cpu_count, ticks)
            if outcome.tasks is not None:
                self._merge_tasks(record, outcome.tasks, uptime, clock)

        return stats

    def _merge_tasks(
        self,
        record: ProcessRecord,
        snaps: list[RawProcessSnapshot],
        uptime: float,
        clock: ClockSample,
    ) -> None:
        if record.tasks is None:
            record.tasks = ProcessTable()
        tasks = record.tasks
        ticks = self.source.clock_ticks
        tasks.reset_touched()
        for snap in snaps:
            current = tasks.get(snap.pid)
            if current is not None and current.start_time_ticks == snap.start_time_ticks:
                current.apply(snap, self._boot_time, uptime, ticks)
            else:
                current = ProcessRecord.from_snapshot(snap, self._boot_time, uptime, ticks)
                tasks.insert(current)
            if snap.ticks is not None:
                update_record_cpu(current, clock, self._cpu_count, ticks)
        tasks.remove_untouched()
