import asyncio
import itertools
import unittest
from unittest.mock import patch

from tripkit.directory import DirectoryModel, derive_storage_key, file_kind, renamed_storage_key
from tripkit.errors import (
    BlobOperationError,
    FolderNotEmptyError,
    GatewayWriteError,
    NotAuthenticatedError,
    NotFoundError,
    OrphanedStateError,
    ValidationError,
)
from tripkit.gateway import in_memory_gateway
from tripkit.identity import StaticIdentity
from tripkit.types import FolderRecord, OrphanKind


def fake_clock(start: float = 1_700_000_000.0):
    ticks = itertools.count()
    return lambda: start + next(ticks)


async def wait_for(predicate, timeout: float = 1.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


class StorageKeyTests(unittest.TestCase):
    def test_derive_storage_key_includes_folder_path(self):
        key = derive_storage_key(
            "alice", "Paris/Day 1/", "photo.jpg", 1700000000000, "ab12cd34"
        )
        self.assertEqual(key, "alice/Paris/Day 1/1700000000000-ab12cd34_photo.jpg")

    def test_derive_storage_key_at_root(self):
        self.assertEqual(derive_storage_key("alice", "", "a.pdf", 5, "n1"), "alice/5-n1_a.pdf")

    def test_renamed_key_keeps_prefix(self):
        self.assertEqual(
            renamed_storage_key("alice/Paris/1-aa_old.jpg", "new.jpg", 2, "bb"),
            "alice/Paris/2-bb_new.jpg",
        )

    def test_file_kind(self):
        self.assertEqual(file_kind("IMG_1.JPG"), "image")
        self.assertEqual(file_kind("clip.mov"), "video")
        self.assertEqual(file_kind("tickets.pdf"), "pdf")
        self.assertEqual(file_kind("notes.txt"), "other")


class DirectoryModelTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.gateway = in_memory_gateway()
        self.confirm_answer = True
        self.model = DirectoryModel(
            self.gateway,
            identity=StaticIdentity("alice"),
            confirm=lambda _prompt: self.confirm_answer,
            clock=fake_clock(),
        )
        await self.model.mount(realtime=False)

    async def asyncTearDown(self):
        await self.model.unmount()
        self.gateway.close()

    async def test_mount_requires_user(self):
        model = DirectoryModel(self.gateway, identity=StaticIdentity(None))
        with self.assertRaises(NotAuthenticatedError):
            await model.mount(realtime=False)

    async def test_create_upload_and_list(self):
        folder = await self.model.create_folder("Paris")
        self.model.enter_folder(folder.id)
        record = await self.model.upload_file("a.jpg", b"jpeg-bytes", folder.id)

        self.assertEqual([f.id for f in self.model.child_files], [record.id])
        self.assertTrue(record.storage_key.startswith("alice/Paris/"))
        self.assertTrue(record.storage_key.endswith("_a.jpg"))
        self.assertEqual(record.size_bytes, len(b"jpeg-bytes"))
        self.assertEqual(
            self.gateway.blobs.get_bytes(record.storage_key), b"jpeg-bytes"
        )

    async def test_create_folder_rejects_bad_names(self):
        for name in ("", "   ", "a/b"):
            with self.assertRaises(ValidationError):
                await self.model.create_folder(name)
        self.assertEqual(len(self.model.folders), 0)

    async def test_create_folder_rejects_unknown_parent(self):
        with self.assertRaises(NotFoundError):
            await self.model.create_folder("Day 1", parent_id="missing")

    async def test_create_folder_failure_leaves_state_unchanged(self):
        with patch.object(
            self.gateway.records, "insert_folder", side_effect=RuntimeError("db down")
        ):
            with self.assertRaises(GatewayWriteError):
                await self.model.create_folder("Paris")
        self.assertEqual(self.model.child_folders, [])

    async def test_folder_tree_is_acyclic(self):
        root = await self.model.create_folder("Trip")
        child = await self.model.create_folder("Day 1", root.id)
        grandchild = await self.model.create_folder("Morning", child.id)

        self.assertEqual(
            [f.id for f in self.model.breadcrumbs(grandchild.id)],
            [root.id, child.id, grandchild.id],
        )
        self.assertEqual(self.model.path_prefix(grandchild.id), "Trip/Day 1/Morning/")
        self.assertEqual(
            sorted(self.model.descendant_folder_ids(root.id)),
            sorted([child.id, grandchild.id]),
        )

    async def test_breadcrumbs_stop_on_corrupt_cycle(self):
        self.model.folders.reset(
            [
                FolderRecord(id="a", name="A", owner="alice", parent_id="b"),
                FolderRecord(id="b", name="B", owner="alice", parent_id="a"),
            ]
        )
        self.assertEqual(len(self.model.breadcrumbs("a")), 2)

    async def test_delete_non_empty_folder_is_rejected(self):
        folder = await self.model.create_folder("Paris")
        await self.model.upload_file("a.jpg", b"x", folder.id)

        with self.assertRaises(FolderNotEmptyError):
            await self.model.delete_folder(folder.id)
        self.assertIn(folder.id, self.model.folders)
        self.assertIsNotNone(self.gateway.records.get_folder(folder.id))

    async def test_delete_folder_with_subfolder_is_rejected(self):
        folder = await self.model.create_folder("Paris")
        await self.model.create_folder("Day 1", folder.id)
        with self.assertRaises(FolderNotEmptyError):
            await self.model.delete_folder(folder.id)

    async def test_delete_declined_does_nothing(self):
        folder = await self.model.create_folder("Paris")
        self.confirm_answer = False
        self.assertFalse(await self.model.delete_folder(folder.id))
        self.assertIn(folder.id, self.model.folders)

    async def test_deleting_current_folder_returns_to_root(self):
        folder = await self.model.create_folder("Paris")
        self.model.enter_folder(folder.id)
        self.assertTrue(await self.model.delete_folder(folder.id))
        self.assertIsNone(self.model.current_folder_id)

    async def test_navigation(self):
        trip = await self.model.create_folder("Trip")
        day = await self.model.create_folder("Day 1", trip.id)
        seen = []
        self.model.add_navigation_listener(seen.append)

        self.model.enter_folder(trip.id)
        self.model.enter_folder(day.id)
        self.model.go_up()
        self.assertEqual(self.model.current_folder_id, trip.id)
        self.model.go_root()
        self.assertIsNone(self.model.current_folder_id)
        self.assertEqual(seen, [trip.id, day.id, trip.id, None])

        with self.assertRaises(NotFoundError):
            self.model.enter_folder("missing")

    async def test_uploads_keep_order_and_continue_past_failures(self):
        real_put = self.gateway.blobs.put

        def flaky_put(key, data, content_type=None):
            if key.endswith("_b.jpg"):
                raise IOError("bucket unavailable")
            return real_put(key, data, content_type)

        with patch.object(self.gateway.blobs, "put", side_effect=flaky_put):
            result = await self.model.upload_files(
                [("a.jpg", b"1"), ("b.jpg", b"2"), ("c.jpg", b"3")]
            )

        self.assertEqual([f.name for f in result.succeeded], ["a.jpg", "c.jpg"])
        self.assertEqual([f.item for f in result.failures], ["b.jpg"])
        self.assertIsInstance(result.failures[0].error, BlobOperationError)
        self.assertTrue(result.partial)
        self.assertEqual([f.name for f in self.model.child_files], ["a.jpg", "c.jpg"])

    async def test_upload_blob_failure_writes_no_row(self):
        with patch.object(self.gateway.blobs, "put", side_effect=IOError("nope")):
            with self.assertRaises(BlobOperationError):
                await self.model.upload_file("a.jpg", b"1")
        self.assertEqual(self.gateway.records.list_files("alice"), [])

    async def test_uploads_in_the_same_millisecond_get_distinct_keys(self):
        frozen = DirectoryModel(
            self.gateway,
            identity=StaticIdentity("alice"),
            clock=lambda: 1_700_000_000.0,
        )
        await frozen.mount(realtime=False)
        try:
            records = [await frozen.upload_file("a.jpg", bytes([n])) for n in range(3)]
        finally:
            await frozen.unmount()

        keys = [r.storage_key for r in records]
        self.assertEqual(len(set(keys)), 3)
        for n, key in enumerate(keys):
            self.assertTrue(key.startswith("alice/1700000000000-"))
            self.assertEqual(self.gateway.blobs.get_bytes(key), bytes([n]))
        self.assertEqual(self.gateway.records.list_orphans(), [])

    async def test_upload_onto_existing_key_records_no_orphan(self):
        with patch.object(
            self.gateway.blobs, "put", side_effect=FileExistsError("alice/1_a.jpg")
        ):
            with self.assertRaises(BlobOperationError):
                await self.model.upload_file("a.jpg", b"1")
        self.assertEqual(self.gateway.records.list_orphans(), [])
        self.assertEqual(self.gateway.records.list_files("alice"), [])

    async def test_upload_row_failure_records_orphan(self):
        with patch.object(
            self.gateway.records, "insert_file", side_effect=RuntimeError("db down")
        ):
            with self.assertRaises(OrphanedStateError) as ctx:
                await self.model.upload_file("a.jpg", b"1")

        orphans = self.gateway.records.list_orphans()
        self.assertEqual(len(orphans), 1)
        self.assertEqual(orphans[0].id, ctx.exception.orphan_id)
        self.assertEqual(orphans[0].kind, OrphanKind.BLOB_WITHOUT_ROW)
        self.assertIn(orphans[0].storage_key, self.gateway.blobs.stored_objects)
        self.assertEqual(self.model.child_files, [])

    async def test_rename_moves_blob_then_row(self):
        record = await self.model.upload_file("old.jpg", b"1")
        updated = await self.model.rename_file(record.id, "new.jpg")

        self.assertEqual(updated.name, "new.jpg")
        self.assertTrue(updated.storage_key.endswith("_new.jpg"))
        self.assertNotIn(record.storage_key, self.gateway.blobs.stored_objects)
        self.assertIn(updated.storage_key, self.gateway.blobs.stored_objects)
        self.assertEqual(self.model.files.get(record.id).name, "new.jpg")

    async def test_rename_to_same_or_empty_name_is_noop(self):
        record = await self.model.upload_file("a.jpg", b"1")
        self.assertIsNone(await self.model.rename_file(record.id, "a.jpg"))
        self.assertIsNone(await self.model.rename_file(record.id, "   "))
        self.assertEqual(self.model.files.get(record.id).storage_key, record.storage_key)

    async def test_rename_blob_failure_rolls_back(self):
        record = await self.model.upload_file("a.jpg", b"1")
        with patch.object(self.gateway.blobs, "move", side_effect=IOError("nope")):
            with self.assertRaises(BlobOperationError):
                await self.model.rename_file(record.id, "b.jpg")
        self.assertEqual(self.model.files.get(record.id).name, "a.jpg")
        self.assertEqual(self.gateway.records.get_file(record.id).name, "a.jpg")

    async def test_rename_row_failure_records_stale_key(self):
        record = await self.model.upload_file("a.jpg", b"1")
        with patch.object(
            self.gateway.records, "update_file", side_effect=RuntimeError("db down")
        ):
            with self.assertRaises(OrphanedStateError):
                await self.model.rename_file(record.id, "b.jpg")

        self.assertEqual(self.model.files.get(record.id).name, "a.jpg")
        (orphan,) = self.gateway.records.list_orphans()
        self.assertEqual(orphan.kind, OrphanKind.STALE_STORAGE_KEY)
        self.assertEqual(orphan.file_id, record.id)
        self.assertEqual(orphan.storage_key, record.storage_key)
        self.assertIn(orphan.new_storage_key, self.gateway.blobs.stored_objects)

    async def test_delete_file_row_failure_records_orphan(self):
        record = await self.model.upload_file("a.jpg", b"1")
        with patch.object(
            self.gateway.records, "delete_file", side_effect=RuntimeError("db down")
        ):
            with self.assertRaises(OrphanedStateError):
                await self.model.delete_file(record.id)
        (orphan,) = self.gateway.records.list_orphans()
        self.assertEqual(orphan.kind, OrphanKind.ROW_WITHOUT_BLOB)
        self.assertNotIn(record.storage_key, self.gateway.blobs.stored_objects)

    async def test_delete_file(self):
        record = await self.model.upload_file("a.jpg", b"1")
        self.assertTrue(await self.model.delete_file(record.id))
        self.assertNotIn(record.id, self.model.files)
        self.assertIsNone(self.gateway.records.get_file(record.id))

    async def test_delete_items_removes_files_before_folders(self):
        folder = await self.model.create_folder("Paris")
        record = await self.model.upload_file("a.jpg", b"1", folder.id)
        result = await self.model.delete_items([folder.id], [record.id])
        self.assertEqual(result.succeeded, [record.id, folder.id])
        self.assertEqual(result.failures, [])

    async def test_search_files_filters_current_folder(self):
        await self.model.upload_file("beach.jpg", b"1")
        await self.model.upload_file("Beach-2.jpg", b"2")
        await self.model.upload_file("museum.jpg", b"3")
        names = [f.name for f in self.model.search_files("beach")]
        self.assertEqual(names, ["Beach-2.jpg", "beach.jpg"])

    async def test_results_after_unmount_are_discarded(self):
        await self.model.unmount()
        await self.model.create_folder("Paris")
        self.assertEqual(self.model.child_folders, [])
        self.assertEqual(len(self.gateway.records.list_folders("alice")), 1)


class DirectoryRealtimeTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.gateway = in_memory_gateway()
        self.alice = DirectoryModel(
            self.gateway, identity=StaticIdentity("alice"), confirm=lambda _p: True
        )
        self.bob = DirectoryModel(self.gateway, identity=StaticIdentity("bob"))
        await self.alice.mount()
        await self.bob.mount()

    async def asyncTearDown(self):
        await self.alice.unmount()
        await self.bob.unmount()
        self.gateway.close()

    async def test_other_owners_changes_are_not_delivered(self):
        await self.alice.create_folder("Paris")
        await asyncio.sleep(0.05)
        self.assertEqual(len(self.bob.folders), 0)

    async def test_remote_delete_of_current_folder_navigates_to_root(self):
        folder = await self.alice.create_folder("Paris")
        self.alice.enter_folder(folder.id)
        await asyncio.to_thread(self.gateway.records.delete_folder, folder.id)
        self.assertTrue(await wait_for(lambda: self.alice.current_folder_id is None))
        self.assertNotIn(folder.id, self.alice.folders)


if __name__ == "__main__":
    unittest.main()
