"""
Per-user task board with ordered status columns.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Optional

from tripkit.errors import GatewayWriteError, NotAuthenticatedError, NotFoundError, ValidationError
from tripkit.gateway import Gateway
from tripkit.identity import Identity
from tripkit.types import BoardItem, BoardStatus, UserRecord

logger = logging.getLogger(__name__)

DEFAULT_STATUSES = ("Pending", "In Progress", "Completed")


class TaskBoard:
    def __init__(self, gateway: Gateway, *, identity: Identity):
        self._planner = gateway.planner
        self._identity = identity
        self._statuses: list[BoardStatus] = []
        self._items: list[BoardItem] = []

    def _require_user(self) -> UserRecord:
        user = self._identity.current_user()
        if user is None:
            raise NotAuthenticatedError("Sign in to use the board")
        return user

    @property
    def statuses(self) -> list[BoardStatus]:
        return list(self._statuses)

    @property
    def items(self) -> list[BoardItem]:
        return list(self._items)

    @property
    def default_status_id(self) -> Optional[str]:
        return self._statuses[0].id if self._statuses else None

    async def load(self) -> None:
        """Fetch statuses (creating the defaults on first use) and items."""
        user = self._require_user()
        statuses = await asyncio.to_thread(self._planner.list_statuses, user.id)
        if not statuses:
            defaults = [(title, position) for position, title in enumerate(DEFAULT_STATUSES)]
            try:
                statuses = await asyncio.to_thread(
                    self._planner.insert_statuses, user.id, defaults
                )
            except Exception as exc:
                raise GatewayWriteError(f"Failed to load board: {exc}") from exc
        self._statuses = statuses
        self._items = await asyncio.to_thread(self._planner.list_board_items, user.id)

    def status_title(self, status_id: Optional[str]) -> Optional[str]:
        status = next((s for s in self._statuses if s.id == status_id), None)
        return status.title if status else None

    async def add_item(
        self,
        title: str,
        due_date: Optional[date] = None,
        description: Optional[str] = None,
    ) -> BoardItem:
        user = self._require_user()
        clean = (title or "").strip()
        if not clean:
            raise ValidationError("Title is required")
        try:
            item = await asyncio.to_thread(
                self._planner.insert_board_item,
                user.id,
                clean,
                status_id=self.default_status_id,
                due_date=due_date.isoformat() if due_date else None,
                description=description,
            )
        except Exception as exc:
            raise GatewayWriteError(f"Could not add: {exc}") from exc
        self._items.append(item)
        return item

    async def move_item(self, item_id: str, status_id: Optional[str]) -> BoardItem:
        if not any(i.id == item_id for i in self._items):
            raise NotFoundError("Board item not found")
        status_id = status_id or None
        if status_id is not None and not any(s.id == status_id for s in self._statuses):
            raise ValidationError("Unknown status")
        try:
            updated = await asyncio.to_thread(
                self._planner.update_board_item_status, item_id, status_id
            )
        except Exception as exc:
            raise GatewayWriteError(f"Update failed: {exc}") from exc
        self._items = [updated if i.id == item_id else i for i in self._items]
        return updated

    async def remove_item(self, item_id: str) -> None:
        try:
            await asyncio.to_thread(self._planner.delete_board_item, item_id)
        except Exception as exc:
            raise GatewayWriteError(f"Delete failed: {exc}") from exc
        self._items = [i for i in self._items if i.id != item_id]
