import unittest
from unittest.mock import patch

from tripkit.db import new_id
from tripkit.gateway import in_memory_gateway
from tripkit.orphans import reconcile_orphans
from tripkit.types import OrphanKind, OrphanRecord


class ReconcileOrphansTests(unittest.TestCase):
    def setUp(self):
        self.gateway = in_memory_gateway()
        self.records = self.gateway.records
        self.blobs = self.gateway.blobs

    def tearDown(self):
        self.gateway.close()

    def _orphan(self, kind: OrphanKind, storage_key: str, **kwargs) -> OrphanRecord:
        orphan = OrphanRecord(
            id=new_id(), kind=kind, owner="alice", storage_key=storage_key, **kwargs
        )
        self.records.record_orphan(orphan)
        return orphan

    def test_row_without_blob_deletes_row(self):
        record = self.records.insert_file("alice", "a.jpg", "alice/1_a.jpg")
        orphan = self._orphan(OrphanKind.ROW_WITHOUT_BLOB, record.storage_key, file_id=record.id)

        report = reconcile_orphans(self.gateway)

        self.assertEqual(report.resolved, [orphan.id])
        self.assertIsNone(self.records.get_file(record.id))
        self.assertEqual(self.records.list_orphans(), [])
        self.assertEqual(len(self.records.list_orphans(include_resolved=True)), 1)

    def test_stale_storage_key_points_row_at_moved_blob(self):
        record = self.records.insert_file("alice", "a.jpg", "alice/1_a.jpg")
        self.blobs.put("alice/2_b.jpg", b"1")
        self._orphan(
            OrphanKind.STALE_STORAGE_KEY,
            record.storage_key,
            file_id=record.id,
            new_storage_key="alice/2_b.jpg",
            new_name="b.jpg",
        )

        reconcile_orphans(self.gateway)

        repaired = self.records.get_file(record.id)
        self.assertEqual(repaired.name, "b.jpg")
        self.assertEqual(repaired.storage_key, "alice/2_b.jpg")

    def test_blob_without_row_deletes_blob(self):
        self.blobs.put("alice/1_a.jpg", b"1")
        self._orphan(OrphanKind.BLOB_WITHOUT_ROW, "alice/1_a.jpg")

        reconcile_orphans(self.gateway)

        self.assertNotIn("alice/1_a.jpg", self.blobs.stored_objects)

    def test_dry_run_changes_nothing(self):
        self.blobs.put("alice/1_a.jpg", b"1")
        orphan = self._orphan(OrphanKind.BLOB_WITHOUT_ROW, "alice/1_a.jpg")

        report = reconcile_orphans(self.gateway, dry_run=True)

        self.assertEqual(report.still_open, [orphan.id])
        self.assertIn("alice/1_a.jpg", self.blobs.stored_objects)
        self.assertEqual(len(self.records.list_orphans()), 1)

    def test_failed_repair_stays_open(self):
        orphan = self._orphan(OrphanKind.BLOB_WITHOUT_ROW, "alice/1_a.jpg")
        with patch.object(self.blobs, "delete", side_effect=IOError("bucket down")):
            report = reconcile_orphans(self.gateway)
        self.assertEqual(report.still_open, [orphan.id])
        self.assertEqual(report.resolved, [])
        self.assertEqual(len(self.records.list_orphans()), 1)


if __name__ == "__main__":
    unittest.main()
