"""
Record types shared across the gateway, the media core and the planner.
"""

from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field
from typing import Generic, Optional, TypeVar

FOLDERS = "folders"
FILES = "files"
BUDGETS = "budgets"
EXPENSES = "expenses"


@dataclass(frozen=True)
class UserRecord:
    id: str


@dataclass
class FolderRecord:
    id: str
    name: str
    owner: str
    parent_id: Optional[str] = None
    public_share_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class FileRecord:
    id: str
    name: str
    owner: str
    storage_key: str
    folder_id: Optional[str] = None
    size_bytes: Optional[int] = None
    public_share_id: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class OrphanRecord:
    """Ledger entry for a blob/row pair left inconsistent."""

    id: str
    kind: "OrphanKind"
    owner: str
    storage_key: str
    file_id: Optional[str] = None
    new_storage_key: Optional[str] = None
    new_name: Optional[str] = None
    detail: str = ""
    created_at: float = field(default_factory=lambda: time.time())
    resolved_at: Optional[float] = None


class OrphanKind(str, enum.Enum):
    # Blob deleted, metadata row still present.
    ROW_WITHOUT_BLOB = "row_without_blob"
    # Blob moved to new_storage_key, row still points at storage_key.
    STALE_STORAGE_KEY = "stale_storage_key"
    # Blob written, metadata row never inserted.
    BLOB_WITHOUT_ROW = "blob_without_row"


@dataclass
class BoardStatus:
    id: str
    title: str
    position: int
    owner: str


@dataclass
class BoardItem:
    id: str
    title: str
    owner: str
    status_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class BudgetRecord:
    id: str
    title: str
    amount: float
    owner: str
    created_at: float = field(default_factory=lambda: time.time())


@dataclass
class ExpenseRecord:
    id: str
    title: str
    amount: float
    owner: str
    budget_id: Optional[str] = None
    paid_by: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())


class ItemKind(str, enum.Enum):
    FOLDER = "folder"
    FILE = "file"


@dataclass(frozen=True)
class ItemRef:
    """A selectable directory entry, tagged with what it points at."""

    kind: ItemKind
    id: str

    @classmethod
    def folder(cls, folder_id: str) -> "ItemRef":
        return cls(ItemKind.FOLDER, folder_id)

    @classmethod
    def file(cls, file_id: str) -> "ItemRef":
        return cls(ItemKind.FILE, file_id)


T = TypeVar("T")


@dataclass
class BatchFailure:
    item: str
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass
class BatchResult(Generic[T]):
    """Outcome of a bulk operation that keeps going past individual failures."""

    succeeded: list[T] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.failures) and not self.succeeded

    @property
    def partial(self) -> bool:
        return bool(self.failures) and bool(self.succeeded)
