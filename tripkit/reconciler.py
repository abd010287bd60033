"""
Local row state with provenance tracking.

Each local entry is tagged ``OPTIMISTIC`` (staged before the gateway
confirmed it) or ``CONFIRMED``. Write responses and change-feed events both
go through ``merge``, so there is exactly one rule for how a change lands.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Generic, Iterable, Optional, TypeVar

from tripkit.events import ChangeEvent, Deleted, Inserted, Updated

R = TypeVar("R")


class Provenance(str, enum.Enum):
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class Entry(Generic[R]):
    row: R
    provenance: Provenance
    # Last confirmed row, restored when an optimistic change is rolled back.
    previous: Optional[R] = None


def merge(current: Optional[Entry], change: ChangeEvent) -> Optional[Entry]:
    """
    Fold one change into the entry currently held for its id.

    * ``Inserted``: adopt the row unless a confirmed entry already exists
      (duplicate inserts are no-ops); an optimistic entry is confirmed.
    * ``Updated``: replace a held entry; ignored when nothing is held.
    * ``Deleted``: drop the entry.

    No sequence numbers are compared: the last change applied wins.
    """
    if isinstance(change, Inserted):
        if current is not None and current.provenance is Provenance.CONFIRMED:
            return current
        return Entry(change.row, Provenance.CONFIRMED)
    if isinstance(change, Updated):
        if current is None:
            return None
        return Entry(change.row, Provenance.CONFIRMED)
    if isinstance(change, Deleted):
        return None
    raise TypeError(f"Unknown change {change!r}")


class Reconciler(Generic[R]):
    """Ordered id -> entry map for one table."""

    def __init__(self, table: str):
        self.table = table
        self._entries: dict[str, Entry[R]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._entries

    def reset(self, rows: Iterable[R]) -> None:
        self._entries = {row.id: Entry(row, Provenance.CONFIRMED) for row in rows}

    def rows(self) -> list[R]:
        return [entry.row for entry in self._entries.values()]

    def get(self, row_id: str) -> Optional[R]:
        entry = self._entries.get(row_id)
        return entry.row if entry else None

    def entry(self, row_id: str) -> Optional[Entry[R]]:
        return self._entries.get(row_id)

    def apply(self, change: ChangeEvent) -> bool:
        """Merge ``change``; return True if local state changed."""
        current = self._entries.get(change.id)
        merged = merge(current, change)
        if merged is current:
            return False
        if merged is None:
            del self._entries[change.id]
        else:
            # Replacing keeps the entry's position; new ids are appended.
            self._entries[change.id] = merged
        return True

    def confirm(self, row: R, *, inserted: bool = False) -> None:
        self.apply(Inserted(self.table, row) if inserted else Updated(self.table, row))

    def discard(self, row_id: str) -> None:
        self.apply(Deleted(self.table, row_id))

    def stage(self, row: R) -> None:
        """Hold ``row`` optimistically until it is confirmed or rolled back."""
        current = self._entries.get(row.id)
        previous = None
        if current is not None:
            previous = current.previous if current.provenance is Provenance.OPTIMISTIC else current.row
        self._entries[row.id] = Entry(row, Provenance.OPTIMISTIC, previous)

    def rollback(self, row_id: str) -> None:
        current = self._entries.get(row_id)
        if current is None or current.provenance is not Provenance.OPTIMISTIC:
            return
        if current.previous is None:
            del self._entries[row_id]
        else:
            self._entries[row_id] = Entry(current.previous, Provenance.CONFIRMED)
