"""CPU usage from scheduler tick counters."""

from __future__ import annotations

from dataclasses import dataclass

from sysprobe.process import ProcessRecord
from sysprobe.source import CpuTimes


@dataclass(frozen=True)
class ClockSample:
    """When a tick sample was taken: aggregate counters plus monotonic time."""

    times: CpuTimes | None
    wall: float


def max_cpu_usage(cpu_count: int) -> float:
    """Upper bound for a single process: every logical core fully busy."""
    return max(1, cpu_count) * 100.0


def elapsed_ticks(
    previous: ClockSample,
    current: ClockSample,
    cpu_count: int,
    clock_ticks: int = 100,
) -> float:
    """Scheduler ticks elapsed per core between two samples.

    Uses the system-wide aggregate counters when both samples have them, and
    the wall-clock interval converted to ticks otherwise. Never returns less
    than one tick, so a counter that went backwards can't divide by zero or
    yield a negative interval.
    """
    if previous.times is not None and current.times is not None:
        delta = current.times.total - previous.times.total
        return max(1.0, delta / max(1, cpu_count))
    return max(1.0, (current.wall - previous.wall) * clock_ticks)


def compute_cpu_usage(record: ProcessRecord, elapsed: float, max_value: float) -> float:
    """Set and return `record.cpu_usage` from its last two tick samples.

    The first observation of an identity only stores a baseline and reports 0.
    Result is clamped to [0, max_value].
    """
    if record.old_ticks is None or record.ticks is None:
        record.cpu_usage = 0.0
        return 0.0

    user = max(0, record.ticks.user - record.old_ticks.user)
    system = max(0, record.ticks.system - record.old_ticks.system)
    usage = (user + system) / max(1.0, elapsed) * 100.0
    record.cpu_usage = min(max(0.0, usage), max_value)
    return record.cpu_usage


def update_record_cpu(
    record: ProcessRecord,
    clock: ClockSample,
    cpu_count: int,
    clock_ticks: int,
) -> float:
    """Stamp a freshly ticked record with `clock` and compute its usage.

    Each record remembers the clock of its own previous sample, so a subset
    refresh measures over the right interval even when other refreshes ran
    in between.
    """
    record.old_clock, record.clock = record.clock, clock
    if record.old_clock is None:
        return compute_cpu_usage(record, 1.0, 0.0)
    elapsed = elapsed_ticks(record.old_clock, clock, cpu_count, clock_ticks)
    return compute_cpu_usage(record, elapsed, max_cpu_usage(cpu_count))


class GlobalCpuUsage:
    """Machine-wide usage from aggregate counters.

    Independent of any process baseline: the first update reports 0, every
    later one the busy share of the ticks elapsed since the previous update.
    """

    def __init__(self) -> None:
        self._previous: CpuTimes | None = None
        self.usage: float = 0.0

    @property
    def previous(self) -> CpuTimes | None:
        return self._previous

    def update(self, current: CpuTimes | None) -> float:
        if current is None:
            return self.usage
        prev, self._previous = self._previous, current
        if prev is None:
            self.usage = 0.0
            return self.usage

        total = current.total - prev.total
        busy = current.busy - prev.busy
        if total <= 0:
            # Counters wrapped or didn't move; keep the last value.
            return self.usage
        self.usage = min(100.0, max(0.0, busy / total * 100.0))
        return self.usage
