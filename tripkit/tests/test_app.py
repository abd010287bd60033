import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tripkit.app import create_app
from tripkit.config import Settings
from tripkit.gateway import in_memory_gateway

ALICE = {"X-User-Id": "alice"}


class BackendApiTests(unittest.TestCase):
    def setUp(self):
        self.gateway = in_memory_gateway()
        settings = Settings(use_in_memory_backends=True, share_origin="https://trip.test")
        self.client = TestClient(create_app(settings, gateway=self.gateway))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def _create_folder(self, name, parent_id=None):
        response = self.client.post(
            "/api/media/folders", json={"name": name, "parent_id": parent_id}, headers=ALICE
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def _upload(self, name, data=b"bytes", folder_id=None):
        response = self.client.post(
            "/api/media/files",
            files=[("files", (name, data, "application/octet-stream"))],
            data={"folder_id": folder_id} if folder_id else None,
            headers=ALICE,
        )
        self.assertEqual(response.status_code, 200)
        return response.json()["uploaded"][0]

    def test_requires_identity(self):
        response = self.client.get("/api/media")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "not_authenticated")

    def test_create_upload_and_list(self):
        folder = self._create_folder("Paris")
        uploaded = self._upload("a.jpg", b"jpeg", folder["id"])
        self.assertTrue(uploaded["storage_key"].startswith("alice/Paris/"))
        self.assertEqual(uploaded["kind"], "image")

        listing = self.client.get(
            "/api/media", params={"folder_id": folder["id"]}, headers=ALICE
        ).json()
        self.assertEqual(listing["current_folder"]["id"], folder["id"])
        self.assertEqual([f["name"] for f in listing["files"]], ["a.jpg"])
        self.assertEqual(listing["path_prefix"], "Paris/")
        self.assertIn(uploaded["storage_key"].split("/")[-1], listing["files"][0]["url"])

    def test_folder_name_validation(self):
        response = self.client.post(
            "/api/media/folders", json={"name": "a/b"}, headers=ALICE
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid")

    def test_delete_non_empty_folder_conflicts(self):
        folder = self._create_folder("Paris")
        self._upload("a.jpg", folder_id=folder["id"])
        response = self.client.delete(
            f"/api/media/folders/{folder['id']}", params={"confirm": "true"}, headers=ALICE
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "folder_not_empty")

    def test_delete_requires_confirmation(self):
        folder = self._create_folder("Paris")
        response = self.client.delete(f"/api/media/folders/{folder['id']}", headers=ALICE)
        self.assertEqual(response.status_code, 400)
        response = self.client.delete(
            f"/api/media/folders/{folder['id']}", params={"confirm": "true"}, headers=ALICE
        )
        self.assertEqual(response.status_code, 200)

    def test_rename_file(self):
        uploaded = self._upload("a.jpg")
        response = self.client.patch(
            f"/api/media/files/{uploaded['id']}", json={"name": "b.jpg"}, headers=ALICE
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["name"], "b.jpg")
        self.assertTrue(response.json()["storage_key"].endswith("_b.jpg"))

    def test_unknown_file_is_404(self):
        response = self.client.patch(
            "/api/media/files/missing", json={"name": "b.jpg"}, headers=ALICE
        )
        self.assertEqual(response.status_code, 404)

    def test_selection_delete_and_details(self):
        first = self._upload("a.jpg", b"x" * 1024)
        second = self._upload("b.jpg")
        items = [{"kind": "file", "id": first["id"]}, {"kind": "file", "id": second["id"]}]

        details = self.client.post(
            "/api/media/selection/details", json={"items": items}, headers=ALICE
        ).json()
        self.assertEqual(details["files"][0]["size_kb"], "1.00 KB")

        response = self.client.post(
            "/api/media/selection/delete",
            params={"confirm": "true"},
            json={"items": items},
            headers=ALICE,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(sorted(response.json()["deleted"]), sorted([first["id"], second["id"]]))
        self.assertEqual(self.client.get("/api/media", headers=ALICE).json()["files"], [])

    def test_share_and_public_view(self):
        folder = self._create_folder("Paris")
        inside = self._upload("eiffel.jpg", folder_id=folder["id"])
        loose = self._upload("map.pdf")
        self._upload("private.jpg")

        share = self.client.post(
            "/api/media/selection/share",
            json={
                "items": [
                    {"kind": "folder", "id": folder["id"]},
                    {"kind": "file", "id": loose["id"]},
                ]
            },
            headers=ALICE,
        ).json()
        self.assertEqual(share["url"], f"https://trip.test/share/{share['token']}")

        # No identity needed to view a share.
        top = self.client.get(f"/api/share/{share['token']}").json()
        self.assertEqual([f["id"] for f in top["folders"]], [folder["id"]])
        self.assertEqual([f["id"] for f in top["files"]], [loose["id"]])

        nested = self.client.get(
            f"/api/share/{share['token']}/folders/{folder['id']}"
        ).json()
        self.assertEqual([f["id"] for f in nested["files"]], [inside["id"]])

        self.assertEqual(self.client.get("/api/share/unknown").status_code, 404)

    def test_orphaned_upload_is_reported(self):
        with patch.object(
            self.gateway.records, "insert_file", side_effect=RuntimeError("db down")
        ):
            response = self.client.post(
                "/api/media/files",
                files=[("files", ("a.jpg", b"x", "image/jpeg"))],
                headers=ALICE,
            )
        self.assertEqual(response.status_code, 502)
        body = response.json()
        self.assertEqual(body["error"], "batch_failed")
        self.assertEqual(body["failures"][0]["item"], "a.jpg")
        self.assertEqual(len(self.gateway.records.list_orphans()), 1)

    def test_board_flow(self):
        board = self.client.get("/api/board", headers=ALICE).json()
        self.assertEqual(
            [s["title"] for s in board["statuses"]], ["Pending", "In Progress", "Completed"]
        )
        board = self.client.post(
            "/api/board/items",
            json={"title": "Book hotel", "due_date": "2024-06-01"},
            headers=ALICE,
        ).json()
        item = board["items"][0]
        self.assertEqual(item["status"], "Pending")

        done = board["statuses"][-1]["id"]
        board = self.client.patch(
            f"/api/board/items/{item['id']}", json={"status_id": done}, headers=ALICE
        ).json()
        self.assertEqual(board["items"][0]["status"], "Completed")

        board = self.client.delete(f"/api/board/items/{item['id']}", headers=ALICE).json()
        self.assertEqual(board["items"], [])

    def test_expenses_flow(self):
        budget = self.client.post(
            "/api/budgets", json={"title": "Food", "amount": 200}, headers=ALICE
        ).json()
        response = self.client.post(
            "/api/expenses",
            json={"title": "Dinner", "amount": 50, "budget_id": budget["id"]},
            headers={"X-User-Id": "bob"},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["paid_by"], "bob")

        summary = self.client.get(
            "/api/expenses", params={"budget_id": budget["id"]}, headers=ALICE
        ).json()
        self.assertEqual(summary["totals"]["balance"], 150)
        self.assertEqual(summary["per_user"], [{"user_id": "bob", "total": 50.0}])

        bad = self.client.post(
            "/api/expenses", json={"title": "Taxi", "amount": -1}, headers=ALICE
        )
        self.assertEqual(bad.status_code, 400)


class MediaSocketTests(unittest.TestCase):
    def setUp(self):
        self.gateway = in_memory_gateway()
        settings = Settings(use_in_memory_backends=True)
        self.client = TestClient(create_app(settings, gateway=self.gateway))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def test_rejects_anonymous_socket(self):
        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/api/media/ws") as ws:
                ws.receive_json()
        self.assertEqual(ctx.exception.code, 4401)

    def test_initial_listing_and_navigation(self):
        folder = self.client.post(
            "/api/media/folders", json={"name": "Paris"}, headers=ALICE
        ).json()
        with self.client.websocket_connect("/api/media/ws", headers=ALICE) as ws:
            listing = ws.receive_json()
            self.assertIsNone(listing["current_folder"])
            self.assertEqual([f["id"] for f in listing["folders"]], [folder["id"]])

            ws.send_json({"action": "enter", "folder_id": folder["id"]})
            listing = ws.receive_json()
            self.assertEqual(listing["current_folder"]["id"], folder["id"])

            ws.send_json({"action": "enter", "folder_id": "missing"})
            self.assertEqual(ws.receive_json()["error"], "not_found")

            ws.send_json({"action": "up"})
            self.assertIsNone(ws.receive_json()["current_folder"])

    def test_malformed_frames_are_rejected_without_closing(self):
        with self.client.websocket_connect("/api/media/ws", headers=ALICE) as ws:
            ws.receive_json()

            ws.send_text("not json")
            self.assertEqual(ws.receive_json()["error"], "invalid")

            ws.send_json([1, 2])
            self.assertEqual(ws.receive_json()["error"], "invalid")

            ws.send_json({"action": "jump"})
            self.assertEqual(ws.receive_json()["error"], "invalid")

            ws.send_json({"action": "root"})
            listing = ws.receive_json()
            self.assertIsNone(listing["current_folder"])
            self.assertEqual(listing["folders"], [])

    def test_pushes_changes_from_other_requests(self):
        with self.client.websocket_connect("/api/media/ws", headers=ALICE) as ws:
            self.assertEqual(ws.receive_json()["folders"], [])
            created = self.client.post(
                "/api/media/folders", json={"name": "Rome"}, headers=ALICE
            ).json()
            listing = ws.receive_json()
            self.assertEqual([f["id"] for f in listing["folders"]], [created["id"]])


if __name__ == "__main__":
    unittest.main()
