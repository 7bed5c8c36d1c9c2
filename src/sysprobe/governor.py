"""Process-wide budget for cached per-process file handles.

Keeping one open `stat` file per tracked process makes refreshes cheaper, but
a busy host can have tens of thousands of processes. The governor hands out
at most `budget` leases; once they are gone, callers read through a plain
open/read/close instead of failing.
"""

from __future__ import annotations

import resource
import threading
from pathlib import Path

import structlog

log = structlog.get_logger()

# Most Linux systems default to 1024 open files.
_FALLBACK_NOFILE = 1024


def initial_budget() -> int:
    """Compute the default handle budget from RLIMIT_NOFILE.

    Raises the soft limit to the hard ceiling where permitted, then keeps half
    of it for the host application.
    """
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError):
        return _FALLBACK_NOFILE // 2

    if hard == resource.RLIM_INFINITY:
        # An unbounded hard limit can't be used as the soft limit, keep the soft one.
        if soft == resource.RLIM_INFINITY:
            return _FALLBACK_NOFILE // 2
        return soft // 2

    if soft != hard:
        try:
            resource.setrlimit(resource.RLIMIT_NOFILE, (hard, hard))
            soft = hard
        except (OSError, ValueError):
            log.debug("nofile_raise_failed", soft=soft, hard=hard)
    return soft // 2


class Lease:
    """One unit of handle budget. Releasing is idempotent."""

    __slots__ = ("_governor", "_released")

    def __init__(self, governor: ResourceGovernor) -> None:
        self._governor = governor
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._governor._give_back()

    def __enter__(self) -> Lease:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class ResourceGovernor:
    """Counts leases against a fixed budget.

    The counter is only ever changed by compare-and-swap under a lock that is
    never held across I/O, so acquiring is non-blocking in practice.
    """

    def __init__(self, budget: int | None = None) -> None:
        limit = initial_budget() if budget is None else budget
        self._max_budget = max(0, limit)
        self._budget = self._max_budget
        self._in_use = 0
        self._lock = threading.Lock()

    @property
    def budget(self) -> int:
        """Current budget (never above the initial one)."""
        return self._budget

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        """Leases that can still be handed out, never negative."""
        return max(0, self._budget - self._in_use)

    def _compare_and_swap(self, expected: int, new: int) -> bool:
        with self._lock:
            if self._in_use != expected:
                return False
            self._in_use = new
            return True

    def acquire(self) -> Lease | None:
        """Take one unit of budget, or return None if it is exhausted."""
        while True:
            current = self._in_use
            if current >= self._budget:
                return None
            if self._compare_and_swap(current, current + 1):
                return Lease(self)

    def _give_back(self) -> None:
        while True:
            current = self._in_use
            if current <= 0:
                return
            if self._compare_and_swap(current, current - 1):
                return

    def set_limit(self, limit: int) -> int:
        """Change the budget, clamped to [0, initial budget].

        Leases already out keep counting against the new budget, so `available`
        may be 0 until enough of them are released. Returns the applied budget.
        """
        applied = min(max(0, limit), self._max_budget)
        with self._lock:
            self._budget = applied
        log.debug("handle_budget_set", budget=applied, in_use=self._in_use)
        return applied


class CachedHandle:
    """An open per-process data file held under a governor lease."""

    def __init__(self, path: Path, fileobj, lease: Lease) -> None:
        self.path = path
        self._file = fileobj
        self._lease = lease

    @property
    def closed(self) -> bool:
        return self._file is None

    def read_all(self) -> bytes:
        """Re-read the whole file from the start."""
        if self._file is None:
            raise ValueError(f"read from closed handle {self.path}")
        self._file.seek(0)
        return self._file.read()

    def close(self) -> None:
        """Close the file and return the lease. Safe to call more than once."""
        fileobj, self._file = self._file, None
        try:
            if fileobj is not None:
                fileobj.close()
        finally:
            self._lease.release()

    def __enter__(self) -> CachedHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"CachedHandle({str(self.path)!r}, {state})"


def open_cached(path: Path, governor: ResourceGovernor) -> tuple[CachedHandle | None, bytes]:
    """Read `path`, keeping it open as a CachedHandle if budget allows.

    Returns (handle, data). The handle is None when the budget is exhausted;
    the data is read either way. OSError from opening or reading propagates,
    with the lease already returned.
    """
    lease = governor.acquire()
    if lease is None:
        log.debug("handle_budget_exhausted", path=str(path))
        return None, path.read_bytes()

    try:
        fileobj = open(path, "rb", buffering=0)
    except BaseException:
        lease.release()
        raise

    handle = CachedHandle(path, fileobj, lease)
    try:
        data = handle.read_all()
    except BaseException:
        handle.close()
        raise
    return handle, data


_default: ResourceGovernor | None = None
_default_lock = threading.Lock()


def default_governor() -> ResourceGovernor:
    """Return the governor shared by every System in this process."""
    global _default
    with _default_lock:
        if _default is None:
            _default = ResourceGovernor()
        return _default


def set_open_files_limit(limit: int) -> int:
    """Set the process-wide handle budget. Returns the applied value."""
    return default_governor().set_limit(limit)
