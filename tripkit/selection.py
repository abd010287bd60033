"""
Multi-select state machine and bulk actions over the current directory view.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from tripkit.directory import DirectoryModel
from tripkit.errors import NotFoundError, PartialBatchError, ValidationError
from tripkit.types import BatchResult, FileRecord, ItemKind, ItemRef

if TYPE_CHECKING:
    from tripkit.sharing import ShareLink, ShareLinkIssuer

logger = logging.getLogger(__name__)

LONG_PRESS_SECONDS = 0.4


class SelectionState(str, enum.Enum):
    IDLE = "idle"
    SELECTING = "selecting"


class ClickOutcome(str, enum.Enum):
    TOGGLED = "toggled"
    OPENED_FOLDER = "opened_folder"
    PREVIEW_FILE = "preview_file"


@dataclass(frozen=True)
class FileDetails:
    id: str
    name: str
    size_bytes: Optional[int]
    owner: str
    storage_key: str

    @property
    def size_kb(self) -> str:
        return f"{(self.size_bytes or 0) / 1024:.2f} KB"

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileDetails":
        return cls(
            id=record.id,
            name=record.name,
            size_bytes=record.size_bytes,
            owner=record.owner,
            storage_key=record.storage_key,
        )


class SelectionController:
    def __init__(
        self,
        model: DirectoryModel,
        *,
        issuer: Optional["ShareLinkIssuer"] = None,
        long_press_seconds: float = LONG_PRESS_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.issuer = issuer
        self.long_press_seconds = long_press_seconds
        self._clock = clock
        self.state = SelectionState.IDLE
        self._selected: set[ItemRef] = set()
        self._press: Optional[tuple[ItemRef, float]] = None
        model.add_navigation_listener(lambda _folder_id: self.cancel())

    @property
    def selected(self) -> frozenset[ItemRef]:
        return frozenset(self._selected)

    @property
    def selecting(self) -> bool:
        return self.state is SelectionState.SELECTING

    # -- gestures ------------------------------------------------------

    def pointer_down(self, item: ItemRef, now: Optional[float] = None) -> None:
        self._press = (item, self._clock() if now is None else now)

    def poll(self, now: Optional[float] = None) -> bool:
        """Timer tick while the pointer is held; True once a long press fires."""
        if self._press is None:
            return False
        item, started = self._press
        now = self._clock() if now is None else now
        if now - started < self.long_press_seconds:
            return False
        self._press = None
        self.begin(item)
        return True

    def pointer_up(self, now: Optional[float] = None) -> bool:
        fired = self.poll(now)
        self._press = None
        return fired

    def secondary_click(self, item: ItemRef) -> None:
        self._press = None
        self.begin(item)

    def click(self, item: ItemRef) -> ClickOutcome:
        if self.selecting:
            self.toggle(item)
            return ClickOutcome.TOGGLED
        if item.kind is ItemKind.FOLDER:
            self.model.enter_folder(item.id)
            return ClickOutcome.OPENED_FOLDER
        if item.id not in self.model.files:
            raise NotFoundError("File not found")
        return ClickOutcome.PREVIEW_FILE

    # -- selection set -------------------------------------------------

    def begin(self, item: ItemRef) -> None:
        self.state = SelectionState.SELECTING
        self._selected.add(item)

    def toggle(self, item: ItemRef) -> None:
        if item in self._selected:
            self._selected.discard(item)
        else:
            self._selected.add(item)

    def select_all(self, items: list[ItemRef]) -> None:
        for item in items:
            self.begin(item)

    def cancel(self) -> None:
        self.state = SelectionState.IDLE
        self._selected.clear()
        self._press = None

    def _in_view(self) -> tuple[list[str], list[str]]:
        """Selected folder and file ids that are still in the current view."""
        folder_ids = {f.id for f in self.model.child_folders}
        file_ids = {f.id for f in self.model.child_files}
        folders = [i.id for i in self._selected if i.kind is ItemKind.FOLDER and i.id in folder_ids]
        files = [i.id for i in self._selected if i.kind is ItemKind.FILE and i.id in file_ids]
        return sorted(folders), sorted(files)

    # -- bulk actions --------------------------------------------------

    @property
    def can_rename(self) -> bool:
        if len(self._selected) != 1:
            return False
        (item,) = self._selected
        return item.kind is ItemKind.FILE and item.id in self.model.files

    async def delete_selected(self) -> BatchResult[str]:
        folder_ids, file_ids = self._in_view()
        total = len(folder_ids) + len(file_ids)
        if not total:
            return BatchResult()
        if not self.model.confirm(f"Delete {total} item(s)?"):
            return BatchResult()
        try:
            result = await self.model.delete_items(folder_ids, file_ids)
        finally:
            self.cancel()
        for failure in result.failures:
            logger.warning("Bulk delete of %s failed: %s", failure.item, failure.message)
        if result.all_failed:
            raise PartialBatchError(
                f"Could not delete any of the {total} selected item(s)", result
            )
        return result

    async def share_selected(self) -> "ShareLink":
        if self.issuer is None:
            raise ValidationError("Sharing is not available here")
        folder_ids, file_ids = self._in_view()
        items = [ItemRef.folder(i) for i in folder_ids] + [ItemRef.file(i) for i in file_ids]
        try:
            return await self.issuer.share(self.model, items)
        finally:
            self.cancel()

    async def rename_selected(self, new_name: str) -> Optional[FileRecord]:
        if not self.can_rename:
            raise ValidationError("Select exactly one file to rename")
        (item,) = self._selected
        try:
            return await self.model.rename_file(item.id, new_name)
        finally:
            self.cancel()

    def details(self) -> list[FileDetails]:
        rows = [self.model.files.get(i.id) for i in self._selected if i.kind is ItemKind.FILE]
        return sorted(
            (FileDetails.from_record(r) for r in rows if r is not None),
            key=lambda d: d.name,
        )
