"""Linux snapshot source reading /proc directly.

Each tracked process keeps its /proc/<pid>/stat open (budget permitting), so
a refresh is one pread-like call per process instead of open/read/close.

The stat line layout (proc(5)), after splitting:
    [0] pid  [1] comm  [2] state  [3] ppid ... [13] utime  [14] stime ...
    [21] starttime  [22] vsize  [23] rss (pages)
"""

from __future__ import annotations

import os
import time
from pathlib import Path

import structlog

from sysprobe.boottime import get_boot_time
from sysprobe.errors import (
    EnumerationError,
    MalformedData,
    PermissionDenied,
    ProcessNotFound,
    TransientReadFailure,
)
from sysprobe.governor import CachedHandle, ResourceGovernor, default_governor, open_cached
from sysprobe.process import RefreshOptions, TickSample, status_from_code
from sysprobe.source import CpuTimes, RawProcessSnapshot

log = structlog.get_logger()

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

STAT_STATE = 2
STAT_PPID = 3
STAT_UTIME = 13
STAT_STIME = 14
STAT_STARTTIME = 21
STAT_VSIZE = 22
STAT_RSS = 23
STAT_MIN_FIELDS = 24

# ─────────────────────────────────────────────────────────────────────────────
# Parsing helpers
# ─────────────────────────────────────────────────────────────────────────────


def parse_stat_file(data: str) -> list[str] | None:
    """Split a /proc/<pid>/stat line into fields.

    The command name sits in parentheses and may itself contain spaces and
    parentheses, so it spans from the first space to the *last* ')'.

    Returns:
        List of fields with the name unwrapped, or None if the line is malformed.
    """
    head, sep, rest = data.partition(" ")
    if not sep:
        return None
    name, sep, tail = rest.rpartition(")")
    if not sep:
        return None
    if name.startswith("("):
        name = name[1:]
    return [head, name, *tail.split()]


def parse_null_separated(raw: bytes) -> list[str]:
    """Split cmdline/environ content on NUL, dropping empty entries."""
    out = []
    for chunk in raw.split(b"\0"):
        text = chunk.decode("utf-8", errors="replace").strip()
        if text:
            out.append(text)
    return out


def parse_uid_gid(status: str) -> tuple[tuple[int, int] | None, tuple[int, int] | None]:
    """Extract (real, effective) uid and gid from /proc/<pid>/status text."""
    uids = gids = None
    for line in status.splitlines():
        if line.startswith(("Uid:", "Gid:")):
            fields = line.split()
            try:
                pair = (int(fields[1]), int(fields[2]))
            except (IndexError, ValueError):
                continue
            if line.startswith("Uid:"):
                uids = pair
            else:
                gids = pair
            if uids is not None and gids is not None:
                break
    return uids, gids


def parse_io(io: str) -> tuple[int | None, int | None]:
    """Extract (read_bytes, write_bytes) from /proc/<pid>/io text."""
    read_bytes = write_bytes = None
    for line in io.splitlines():
        key, _, value = line.partition(": ")
        if key == "read_bytes":
            read_bytes = _to_int(value)
        elif key == "write_bytes":
            write_bytes = _to_int(value)
    return read_bytes, write_bytes


def _cpu_line(line: str) -> CpuTimes:
    values = [_to_int(v) or 0 for v in line.split()[1:]]
    values += [0] * (8 - len(values))
    user, nice, system, idle, iowait, irq, softirq, steal = values[:8]
    busy = user + nice + system + irq + softirq + steal
    return CpuTimes(busy=busy, total=busy + idle + iowait)


def parse_cpu_times(stat: str) -> CpuTimes | None:
    """Aggregate busy/total ticks from the first `cpu` line of /proc/stat."""
    for line in stat.splitlines():
        if line.startswith("cpu "):
            return _cpu_line(line)
    return None


def parse_per_cpu_times(stat: str) -> list[CpuTimes]:
    """One entry per `cpuN` line, in the order the kernel lists them."""
    return [
        _cpu_line(line)
        for line in stat.splitlines()
        if line.startswith("cpu") and line[3:4].isdigit()
    ]


def _to_int(value: str) -> int | None:
    try:
        return int(value.strip())
    except ValueError:
        return None


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(errors="replace")
    except OSError:
        return None


def _read_link(path: Path) -> Path | None:
    try:
        return Path(os.readlink(path))
    except OSError:
        return None


def _read_error(pid: int, e: OSError) -> Exception:
    """Map an OSError from the primary stat read to a ReadError."""
    if isinstance(e, (FileNotFoundError, ProcessLookupError)):
        return ProcessNotFound(pid, str(e))
    if isinstance(e, PermissionError):
        return PermissionDenied(pid, str(e))
    return TransientReadFailure(pid, str(e))


# ─────────────────────────────────────────────────────────────────────────────
# Source
# ─────────────────────────────────────────────────────────────────────────────


class ProcfsSource:
    """SnapshotSource over a procfs mount.

    Args:
        root: procfs mount point (tests point this at a fake tree).
        governor: handle budget; defaults to the process-wide one.
        cache_handles: keep stat files open between refreshes.
    """

    def __init__(
        self,
        root: Path = Path("/proc"),
        governor: ResourceGovernor | None = None,
        cache_handles: bool = True,
    ) -> None:
        self.root = Path(root)
        self.governor = governor if governor is not None else default_governor()
        self.cache_handles = cache_handles
        self.clock_ticks = os.sysconf("SC_CLK_TCK")
        self.page_size = os.sysconf("SC_PAGE_SIZE")
        self._boot_time: float | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Enumeration
    # ─────────────────────────────────────────────────────────────────────────

    def enumerate_identifiers(self) -> list[int]:
        try:
            with os.scandir(self.root) as entries:
                return [int(e.name) for e in entries if e.name.isdigit()]
        except OSError as e:
            raise EnumerationError(f"cannot list {self.root}: {e}") from e

    def enumerate_tasks(self, pid: int) -> list[int]:
        try:
            with os.scandir(self.root / str(pid) / "task") as entries:
                return [int(e.name) for e in entries if e.name.isdigit() and int(e.name) != pid]
        except OSError:
            return []

    def probe_alive(self, pid: int) -> bool:
        return (self.root / str(pid)).exists()

    # ─────────────────────────────────────────────────────────────────────────
    # Per-process reads
    # ─────────────────────────────────────────────────────────────────────────

    def read_identity(self, pid: int, handle: CachedHandle | None = None) -> int | None:
        data = None
        if handle is not None and not handle.closed:
            try:
                data = handle.read_all()
            except OSError:
                data = None
        if not data:
            try:
                data = (self.root / str(pid) / "stat").read_bytes()
            except OSError:
                return None
        parts = parse_stat_file(data.decode("utf-8", errors="replace"))
        if parts is None or len(parts) < STAT_MIN_FIELDS:
            return None
        return _to_int(parts[STAT_STARTTIME])

    def read_snapshot(
        self,
        pid: int,
        options: RefreshOptions,
        handle: CachedHandle | None = None,
    ) -> RawProcessSnapshot:
        base = self.root / str(pid)
        data, used = self._read_stat(pid, base / "stat", handle)
        try:
            return self._build(pid, base, data, options, used, parent=None)
        except BaseException:
            if used is not None and used is not handle:
                used.close()
            raise

    def read_task_snapshot(self, pid: int, tid: int, options: RefreshOptions) -> RawProcessSnapshot:
        base = self.root / str(pid) / "task" / str(tid)
        try:
            data = (base / "stat").read_bytes()
        except OSError as e:
            raise _read_error(tid, e) from e
        return self._build(tid, base, data, options, None, parent=pid)

    def _read_stat(
        self,
        pid: int,
        path: Path,
        handle: CachedHandle | None,
    ) -> tuple[bytes, CachedHandle | None]:
        """Read stat through `handle` if it still works, else reopen.

        A cached descriptor stops working once its process exits, even if the
        pid has been reused since, so any failure falls back to a fresh open.
        """
        if handle is not None and not handle.closed:
            try:
                data = handle.read_all()
                if data:
                    return data, handle
            except OSError:
                log.debug("stale_stat_handle", pid=pid)

        try:
            if self.cache_handles:
                fresh, data = open_cached(path, self.governor)
            else:
                fresh, data = None, path.read_bytes()
        except OSError as e:
            raise _read_error(pid, e) from e
        if not data:
            if fresh is not None:
                fresh.close()
            raise ProcessNotFound(pid, "empty stat")
        return data, fresh

    def _build(
        self,
        pid: int,
        base: Path,
        data: bytes,
        options: RefreshOptions,
        handle: CachedHandle | None,
        parent: int | None,
    ) -> RawProcessSnapshot:
        parts = parse_stat_file(data.decode("utf-8", errors="replace"))
        if parts is None or len(parts) < STAT_MIN_FIELDS:
            raise MalformedData(pid, "unparseable stat line")
        try:
            start_ticks = int(parts[STAT_STARTTIME])
            ppid = int(parts[STAT_PPID])
            utime = int(parts[STAT_UTIME])
            stime = int(parts[STAT_STIME])
            vsize = int(parts[STAT_VSIZE])
            rss_pages = int(parts[STAT_RSS])
        except ValueError as e:
            raise MalformedData(pid, f"non-numeric stat field: {e}") from e

        status, code = status_from_code(parts[STAT_STATE])
        snap = RawProcessSnapshot(
            pid=pid,
            start_time_ticks=start_ticks,
            name=parts[1],
            parent=parent if parent is not None else (ppid or None),
            status=status,
            status_code=code,
            handle=handle,
        )

        if options.cpu:
            snap.ticks = TickSample(user=utime, system=stime)
        if options.memory:
            snap.memory = max(0, rss_pages) * self.page_size
            snap.virtual_memory = vsize

        # Everything below is best effort: permission errors leave the field unset.
        if options.disk_usage:
            io = _read_text(base / "io")
            if io is not None:
                snap.read_bytes, snap.written_bytes = parse_io(io)
        if options.exe.requested:
            snap.exe = _read_link(base / "exe")
        if options.cmd.requested:
            snap.cmd = self._read_list(base / "cmdline")
        if options.environ.requested:
            snap.environ = self._read_list(base / "environ")
        if options.cwd.requested:
            snap.cwd = _read_link(base / "cwd")
        if options.root.requested:
            snap.root = _read_link(base / "root")
        if options.user.requested:
            status_text = _read_text(base / "status")
            if status_text is not None:
                snap.uids, snap.gids = parse_uid_gid(status_text)
        return snap

    @staticmethod
    def _read_list(path: Path) -> list[str] | None:
        try:
            return parse_null_separated(path.read_bytes())
        except OSError:
            return None

    # ─────────────────────────────────────────────────────────────────────────
    # System-wide
    # ─────────────────────────────────────────────────────────────────────────

    def read_cpu_times(self) -> CpuTimes | None:
        stat = _read_text(self.root / "stat")
        return parse_cpu_times(stat) if stat is not None else None

    def read_per_cpu_times(self) -> list[CpuTimes]:
        stat = _read_text(self.root / "stat")
        return parse_per_cpu_times(stat) if stat is not None else []

    def cpu_count(self) -> int:
        stat = _read_text(self.root / "stat")
        if stat is not None:
            count = len(parse_per_cpu_times(stat))
            if count:
                return count
        return os.cpu_count() or 1

    def boot_time(self) -> float:
        if self._boot_time is None:
            self._boot_time = float(get_boot_time(self.root))
        return self._boot_time

    def uptime(self) -> float:
        text = _read_text(self.root / "uptime")
        if text:
            try:
                return float(text.split()[0])
            except (IndexError, ValueError):
                pass
        return max(0.0, time.time() - self.boot_time())
