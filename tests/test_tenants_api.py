import json
import os
import sys
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

_DB_DIR = tempfile.mkdtemp(prefix="tenant-store-")
os.environ.setdefault("DB_URL", f"sqlite:///{_DB_DIR}/test.sqlite")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app

HEADERS = {"X-Admin-Token": backend_app.ADMIN_TOKEN}


def _wipe_db() -> None:
    db = backend_app.SessionLocal()
    try:
        db.query(backend_app.Tenant).delete()
        db.commit()
    finally:
        db.close()


def _tenant_payload(**overrides) -> dict:
    payload = {
        "chat_user_id": "100",
        "chat_login": "Streamer",
        "chat_access_token": "access",
        "chat_refresh_token": "refresh",
        "music_refresh_token": "google-refresh",
    }
    payload.update(overrides)
    return payload


class TenantsApiTests(unittest.TestCase):
    def setUp(self) -> None:
        _wipe_db()
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()
        _wipe_db()

    def _create(self, **overrides) -> dict:
        resp = self.client.post("/tenants", json=_tenant_payload(**overrides), headers=HEADERS)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_requires_admin_token(self) -> None:
        resp = self.client.get("/tenants")
        self.assertEqual(resp.status_code, 401)
        resp = self.client.get("/tenants", headers={"X-Admin-Token": "wrong"})
        self.assertEqual(resp.status_code, 401)

    def test_upsert_creates_then_updates_by_chat_user(self) -> None:
        created = self._create()
        self.assertEqual(created["playlist_name"], "Requests")
        self.assertTrue(created["music_connected"])
        self.assertTrue(created["active"])

        updated = self._create(chat_login="StreamerRenamed", chat_access_token="access2")

        self.assertEqual(updated["id"], created["id"])
        self.assertEqual(updated["chat_login"], "StreamerRenamed")
        self.assertEqual(updated["chat_access_token"], "access2")
        self.assertEqual(len(self.client.get("/tenants", headers=HEADERS).json()), 1)

    def test_active_filter(self) -> None:
        first = self._create()
        self._create(chat_user_id="200", chat_login="Other", active=False)

        active = self.client.get("/tenants", params={"active": 1}, headers=HEADERS).json()
        everyone = self.client.get("/tenants", headers=HEADERS).json()

        self.assertEqual([t["id"] for t in active], [first["id"]])
        self.assertEqual(len(everyone), 2)

    def test_get_missing_tenant_is_404(self) -> None:
        resp = self.client.get("/tenants/12345", headers=HEADERS)
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"], "tenant not found")

    def test_playlist_id_write_back(self) -> None:
        tenant = self._create()

        resp = self.client.put(f"/tenants/{tenant['id']}/playlist", json={"playlist_id": "PL1"}, headers=HEADERS)

        self.assertEqual(resp.status_code, 200)
        fetched = self.client.get(f"/tenants/{tenant['id']}", headers=HEADERS).json()
        self.assertEqual(fetched["playlist_id"], "PL1")

    def test_playlist_rename_forgets_playlist_id(self) -> None:
        tenant = self._create()
        self.client.put(f"/tenants/{tenant['id']}/playlist", json={"playlist_id": "PL1"}, headers=HEADERS)

        same = self._create(playlist_name="Requests")
        self.assertEqual(same["playlist_id"], "PL1")

        renamed = self._create(playlist_name="Stream Queue")
        self.assertIsNone(renamed["playlist_id"])
        self.assertEqual(renamed["playlist_name"], "Stream Queue")

    def test_credential_write_back(self) -> None:
        tenant = self._create()

        resp = self.client.put(
            f"/tenants/{tenant['id']}/credentials",
            json={"access_token": "new-access", "refresh_token": "new-refresh"},
            headers=HEADERS,
        )

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["chat_access_token"], "new-access")
        self.assertEqual(body["chat_refresh_token"], "new-refresh")

    def test_toggle_and_delete(self) -> None:
        tenant = self._create()

        resp = self.client.post(f"/tenants/{tenant['id']}/toggle", headers=HEADERS)
        self.assertEqual(resp.json(), {"active": False})
        active = self.client.get("/tenants", params={"active": 1}, headers=HEADERS).json()
        self.assertEqual(active, [])

        resp = self.client.delete(f"/tenants/{tenant['id']}", headers=HEADERS)
        self.assertEqual(resp.json(), {"success": True})
        self.assertEqual(self.client.get(f"/tenants/{tenant['id']}", headers=HEADERS).status_code, 404)

    def test_music_unlink_clears_connection(self) -> None:
        tenant = self._create()

        unlinked = self._create(music_refresh_token="")

        self.assertEqual(unlinked["id"], tenant["id"])
        self.assertFalse(unlinked["music_connected"])
        self.assertIsNone(unlinked["music_refresh_token"])


class BotLogApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(backend_app.app)

    def tearDown(self) -> None:
        self.client.close()

    def test_push_bot_log_acknowledges(self) -> None:
        resp = self.client.post(
            "/bot/logs",
            json={"message": "Joined channel streamer", "metadata": {"event": "join"}},
            headers=HEADERS,
        )

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})

    def test_push_bot_log_reaches_listeners(self) -> None:
        queue = backend_app.bot_logs.subscribe()
        try:
            self.client.post("/bot/logs", json={"message": "hello", "level": "error"}, headers=HEADERS)
        finally:
            backend_app.bot_logs.unsubscribe(queue)

        payload = json.loads(queue.get_nowait())
        self.assertEqual(payload["message"], "hello")
        self.assertEqual(payload["level"], "error")
        self.assertIn("timestamp", payload)

    def test_full_listener_is_dropped(self) -> None:
        broadcaster = backend_app.LogBroadcaster(backlog=1)
        queue = broadcaster.subscribe()

        broadcaster.publish({"message": "one"})
        broadcaster.publish({"message": "two"})

        self.assertNotIn(queue, broadcaster.listeners)
        self.assertEqual(json.loads(queue.get_nowait())["message"], "one")


if __name__ == "__main__":
    unittest.main()
