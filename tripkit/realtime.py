"""
Realtime sync: folds change-feed events for one table into a reconciler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from tripkit.events import ChangeEvent
from tripkit.feed import ChangeFeed, Subscription
from tripkit.reconciler import Reconciler

logger = logging.getLogger(__name__)


class RealtimeSyncAdapter:
    def __init__(
        self,
        feed: ChangeFeed,
        reconciler: Reconciler,
        *,
        owner: Optional[str] = None,
        on_change: Optional[Callable[[ChangeEvent], None]] = None,
    ):
        self.table = reconciler.table
        self.owner = owner
        self._feed = feed
        self._reconciler = reconciler
        self._on_change = on_change
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self._feed.subscribe(self.table, owner=self.owner)
        self._task = asyncio.create_task(self._consume(self._subscription))

    async def _consume(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                self.apply(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Realtime consumer for %s stopped", self.table)

    def apply(self, event: ChangeEvent) -> bool:
        changed = self._reconciler.apply(event)
        if changed:
            logger.debug("Applied %s %s on %s", type(event).__name__, event.id, self.table)
            if self._on_change is not None:
                self._on_change(event)
        return changed

    async def stop(self) -> None:
        task, self._task = self._task, None
        subscription, self._subscription = self._subscription, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if subscription is not None:
            await subscription.close()
