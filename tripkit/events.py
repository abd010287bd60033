"""
Typed change events carried by the change feed.

Feed messages arrive as loose JSON (``{"kind": ..., "table": ..., "row": ...}``);
``parse_change`` validates them into one of ``Inserted``, ``Updated`` or
``Deleted`` so nothing downstream inspects untyped payloads.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from tripkit.errors import FeedPayloadError
from tripkit.types import (
    BUDGETS,
    EXPENSES,
    FILES,
    FOLDERS,
    BudgetRecord,
    ExpenseRecord,
    FileRecord,
    FolderRecord,
)

ROW_TYPES: dict[str, type] = {
    FOLDERS: FolderRecord,
    FILES: FileRecord,
    BUDGETS: BudgetRecord,
    EXPENSES: ExpenseRecord,
}


@dataclass(frozen=True)
class Inserted:
    table: str
    row: Any

    @property
    def id(self) -> str:
        return self.row.id

    @property
    def owner(self) -> Optional[str]:
        return self.row.owner


@dataclass(frozen=True)
class Updated:
    table: str
    row: Any

    @property
    def id(self) -> str:
        return self.row.id

    @property
    def owner(self) -> Optional[str]:
        return self.row.owner


@dataclass(frozen=True)
class Deleted:
    table: str
    id: str
    owner: Optional[str] = None


ChangeEvent = Union[Inserted, Updated, Deleted]


class ChangePayload(BaseModel):
    kind: Literal["insert", "update", "delete"]
    table: Literal["folders", "files", "budgets", "expenses"]
    row: Optional[dict] = None
    id: Optional[str] = None
    owner: Optional[str] = None


@lru_cache(maxsize=None)
def _row_adapter(table: str) -> TypeAdapter:
    return TypeAdapter(ROW_TYPES[table])


def parse_change(payload: dict) -> ChangeEvent:
    """Validate a raw feed message into a typed change event."""
    try:
        message = ChangePayload.model_validate(payload)
    except PydanticValidationError as exc:
        raise FeedPayloadError(f"Malformed change payload: {exc}") from exc

    if message.kind == "delete":
        row_id = message.id or (message.row or {}).get("id")
        if not row_id:
            raise FeedPayloadError("Delete event without an id")
        owner = message.owner or (message.row or {}).get("owner")
        return Deleted(table=message.table, id=row_id, owner=owner)

    if message.row is None:
        raise FeedPayloadError(f"{message.kind} event without a row")
    try:
        row = _row_adapter(message.table).validate_python(message.row)
    except PydanticValidationError as exc:
        raise FeedPayloadError(
            f"Row does not match table {message.table}: {exc}"
        ) from exc
    if message.kind == "insert":
        return Inserted(table=message.table, row=row)
    return Updated(table=message.table, row=row)


def serialize_change(event: ChangeEvent) -> dict:
    """Inverse of ``parse_change``; used by feeds that ship JSON."""
    if isinstance(event, Deleted):
        return {
            "kind": "delete",
            "table": event.table,
            "id": event.id,
            "owner": event.owner,
        }
    kind = "insert" if isinstance(event, Inserted) else "update"
    return {"kind": kind, "table": event.table, "row": asdict(event.row)}
