import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

from tripkit.storage import InMemoryBlobStore, S3BlobStore


class InMemoryBlobStoreTests(unittest.TestCase):
    def test_put_refuses_overwrite(self):
        store = InMemoryBlobStore()
        store.put("alice/1_a.jpg", b"1")
        with self.assertRaises(FileExistsError):
            store.put("alice/1_a.jpg", b"2")
        self.assertEqual(store.get_bytes("alice/1_a.jpg"), b"1")

    def test_move_and_delete(self):
        store = InMemoryBlobStore(base_url="https://cdn.test")
        store.put("alice/1_a.jpg", b"1")
        store.move("alice/1_a.jpg", "alice/2_b.jpg")
        self.assertEqual(store.get_bytes("alice/2_b.jpg"), b"1")
        with self.assertRaises(FileNotFoundError):
            store.move("alice/1_a.jpg", "alice/3_c.jpg")
        store.delete("alice/2_b.jpg")
        store.delete("alice/2_b.jpg")
        self.assertEqual(store.stored_objects, {})

    def test_public_url_quotes_key(self):
        store = InMemoryBlobStore(base_url="https://cdn.test")
        self.assertEqual(
            store.public_url("alice/Day 1/1_a.jpg"), "https://cdn.test/alice/Day%201/1_a.jpg"
        )


class S3BlobStoreTests(unittest.TestCase):
    def setUp(self):
        patcher = patch("tripkit.storage.boto3.client")
        self.client_factory = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = MagicMock()
        self.client_factory.return_value = self.client

    def _store(self, **kwargs):
        params = dict(
            bucket="media",
            region="ap-shanghai",
            endpoint="https://cos.ap-shanghai.myqcloud.com",
            access_key_id="id",
            secret_access_key="secret",
        )
        params.update(kwargs)
        return S3BlobStore(**params)

    def test_put_is_conditional(self):
        self._store().put("alice/1-ab12cd34_a.jpg", b"1", "image/jpeg")
        kwargs = self.client.put_object.call_args.kwargs
        self.assertEqual(kwargs["IfNoneMatch"], "*")
        self.assertEqual(kwargs["Key"], "alice/1-ab12cd34_a.jpg")
        self.assertEqual(kwargs["ContentType"], "image/jpeg")

    def test_put_refuses_existing_key(self):
        self.client.put_object.side_effect = ClientError(
            {"Error": {"Code": "PreconditionFailed", "Message": "precondition failed"}},
            "PutObject",
        )
        with self.assertRaises(FileExistsError):
            self._store().put("alice/1_a.jpg", b"2")

    def test_put_propagates_other_errors(self):
        self.client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )
        with self.assertRaises(ClientError):
            self._store().put("alice/1_a.jpg", b"2")

    def test_move_refuses_existing_target(self):
        with self.assertRaises(FileExistsError):
            self._store().move("alice/1_a.jpg", "alice/2_b.jpg")
        self.client.copy_object.assert_not_called()
        self.client.delete_object.assert_not_called()

    def test_move_copies_then_deletes(self):
        self.client.head_object.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
        )
        self._store().move("alice/1_a.jpg", "alice/2_b.jpg")
        self.client.copy_object.assert_called_once_with(
            Bucket="media",
            Key="alice/2_b.jpg",
            CopySource={"Bucket": "media", "Key": "alice/1_a.jpg"},
        )
        self.client.delete_object.assert_called_once_with(Bucket="media", Key="alice/1_a.jpg")

    def test_public_url(self):
        self.assertEqual(
            self._store().public_url("alice/1_a.jpg"),
            "https://media.cos.ap-shanghai.myqcloud.com/alice/1_a.jpg",
        )
        self.assertEqual(
            self._store(public_base_url="https://cdn.test/").public_url("alice/1_a.jpg"),
            "https://cdn.test/alice/1_a.jpg",
        )


if __name__ == "__main__":
    unittest.main()
