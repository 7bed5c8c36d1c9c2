"""Error kinds raised by snapshot sources.

A read error is always about one process. The refresh coordinator decides
per pid what to do with it; none of these abort a refresh batch.
"""


class SysprobeError(Exception):
    """Base class for sysprobe errors."""


class EnumerationError(SysprobeError):
    """The source could not list process identifiers at all."""


class ReadError(SysprobeError):
    """Reading one process failed."""

    def __init__(self, pid: int, detail: str = "") -> None:
        self.pid = pid
        self.detail = detail
        msg = f"pid {pid}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class PermissionDenied(ReadError):
    """Not allowed to read the primary process data."""


class ProcessNotFound(ReadError):
    """The process vanished between enumeration and read."""


class TransientReadFailure(ReadError):
    """A syscall-level hiccup; worth retrying next cycle."""


class MalformedData(ReadError):
    """The backend returned data that failed structural parsing."""
