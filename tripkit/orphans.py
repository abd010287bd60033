"""
Reconciliation sweep over the orphan ledger.

Each ledger entry records the half of an operation that did complete; the
sweep replays the missing half and marks the entry resolved. Entries whose
repair fails stay open for the next run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tripkit.gateway import Gateway
from tripkit.types import OrphanKind, OrphanRecord

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    resolved: list[str] = field(default_factory=list)
    still_open: list[str] = field(default_factory=list)


def repair(orphan: OrphanRecord, gateway: Gateway) -> None:
    records = gateway.records
    if orphan.kind is OrphanKind.ROW_WITHOUT_BLOB:
        if orphan.file_id:
            records.delete_file(orphan.file_id)
    elif orphan.kind is OrphanKind.STALE_STORAGE_KEY:
        if orphan.file_id and records.get_file(orphan.file_id) is not None:
            records.update_file(
                orphan.file_id,
                name=orphan.new_name,
                storage_key=orphan.new_storage_key,
            )
    elif orphan.kind is OrphanKind.BLOB_WITHOUT_ROW:
        gateway.blobs.delete(orphan.storage_key)
    else:
        raise ValueError(f"Unknown orphan kind {orphan.kind}")


def reconcile_orphans(gateway: Gateway, *, dry_run: bool = False) -> SweepReport:
    report = SweepReport()
    for orphan in gateway.records.list_orphans():
        if dry_run:
            logger.info("Would repair %s (%s) %s", orphan.id, orphan.kind.value, orphan.storage_key)
            report.still_open.append(orphan.id)
            continue
        try:
            repair(orphan, gateway)
            gateway.records.resolve_orphan(orphan.id)
        except Exception:
            logger.exception("Failed to repair orphan %s", orphan.id)
            report.still_open.append(orphan.id)
            continue
        logger.info("Repaired orphan %s (%s)", orphan.id, orphan.kind.value)
        report.resolved.append(orphan.id)
    return report
