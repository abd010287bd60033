"""
Composition root for the remote data gateway.

``build_gateway`` constructs every backend client once, at application
startup; components receive the resulting ``Gateway`` explicitly and
``Gateway.close`` tears the connections down on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tripkit.config import Settings
from tripkit.db import InMemoryRecordStore, RecordStore, SqlRecordStore
from tripkit.feed import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from tripkit.planner_db import InMemoryPlannerStore, PlannerStore, SqlPlannerStore
from tripkit.storage import BlobStore, InMemoryBlobStore, S3BlobStore

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    records: RecordStore
    planner: PlannerStore
    blobs: BlobStore
    feed: ChangeFeed

    def close(self) -> None:
        self.feed.close()
        for store in (self.records, self.planner):
            engine = getattr(store, "engine", None)
            if engine is not None:
                engine.dispose()


def in_memory_gateway() -> Gateway:
    feed = InMemoryChangeFeed()
    return Gateway(
        records=InMemoryRecordStore(feed),
        planner=InMemoryPlannerStore(feed),
        blobs=InMemoryBlobStore(),
        feed=feed,
    )


def build_gateway(settings: Settings) -> Gateway:
    """Pick real or in-memory backends for each gateway concern."""
    if settings.use_in_memory_backends:
        return in_memory_gateway()

    if settings.redis_url:
        feed: ChangeFeed = RedisChangeFeed(
            settings.redis_url, channel_prefix=settings.feed_channel_prefix
        )
    else:
        # Without Redis, changes only reach subscribers in this process.
        feed = InMemoryChangeFeed()

    if settings.database_url:
        records: RecordStore = SqlRecordStore(settings.database_url, feed)
        planner: PlannerStore = SqlPlannerStore(
            settings.database_url, feed, engine=records.engine
        )
    else:
        records = InMemoryRecordStore(feed)
        planner = InMemoryPlannerStore(feed)

    if settings.media_bucket:
        blobs: BlobStore = S3BlobStore(
            bucket=settings.media_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.public_base_url,
        )
    else:
        blobs = InMemoryBlobStore()

    logger.info(
        "Gateway: records=%s blobs=%s feed=%s",
        records.__class__.__name__,
        blobs.__class__.__name__,
        feed.__class__.__name__,
    )
    return Gateway(records=records, planner=planner, blobs=blobs, feed=feed)
