"""The persisted pid -> ProcessRecord map."""

from __future__ import annotations

from collections.abc import ItemsView, Iterator, ValuesView

import structlog

from sysprobe.process import ProcessRecord

log = structlog.get_logger()


class ProcessTable:
    """Owns every process record.

    Membership only changes through `insert`, `remove_untouched` and `clear`.
    Replaced and removed records have their cached handles released here, so
    no handle outlives the record that held it.
    """

    def __init__(self) -> None:
        self._records: dict[int, ProcessRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, pid: object) -> bool:
        return pid in self._records

    def __iter__(self) -> Iterator[int]:
        return iter(self._records)

    def __getitem__(self, pid: int) -> ProcessRecord:
        return self._records[pid]

    def get(self, pid: int) -> ProcessRecord | None:
        return self._records.get(pid)

    def values(self) -> ValuesView[ProcessRecord]:
        return self._records.values()

    def items(self) -> ItemsView[int, ProcessRecord]:
        return self._records.items()

    def pids(self) -> set[int]:
        return set(self._records)

    def insert(self, record: ProcessRecord) -> ProcessRecord | None:
        """Insert or replace the record for `record.pid`.

        Returns the replaced record (already released), if any.
        """
        old = self._records.get(record.pid)
        self._records[record.pid] = record
        if old is not None and old is not record:
            old.release()
            return old
        return None

    def reset_touched(self) -> None:
        """Start of a full pass: nothing has been examined yet."""
        for record in self._records.values():
            record.touched = False

    def remove_untouched(self) -> list[int]:
        """End of a full pass: drop every record nobody touched."""
        removed = [pid for pid, rec in self._records.items() if not rec.touched]
        for pid in removed:
            self._records.pop(pid).release()
        if removed:
            log.debug("processes_purged", count=len(removed))
        return removed

    def clear(self) -> None:
        for record in self._records.values():
            record.release()
        self._records.clear()
