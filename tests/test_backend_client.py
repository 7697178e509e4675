import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import bot.backend as backend_module
from bot.backend import Backend, BackendError, push_console_event

TENANT_ROW = {
    "id": 3,
    "chat_user_id": "100",
    "chat_login": "Streamer",
    "chat_access_token": "access",
    "chat_refresh_token": "refresh",
    "music_refresh_token": None,
    "music_connected": False,
    "playlist_id": None,
    "playlist_name": "Requests",
    "active": True,
}


class BackendTenantTests(unittest.IsolatedAsyncioTestCase):
    async def test_list_active_tenants_builds_models(self) -> None:
        """
        Verify the roster feed is requested with the active filter.

        Dependencies: relies on AsyncMock to emulate backend `_req` calls.
        Code customers: RosterReconciler compares the returned channels against
        the joined set, so rows must arrive as Tenant objects.
        """
        backend = Backend("http://api/", "token")
        backend._req = AsyncMock(return_value=[TENANT_ROW])

        tenants = await backend.list_active_tenants()

        backend._req.assert_awaited_once_with("GET", "/tenants?active=1")
        self.assertEqual(len(tenants), 1)
        self.assertEqual(tenants[0].id, 3)
        self.assertEqual(tenants[0].channel, "streamer")
        self.assertIsNone(tenants[0].music_refresh_token)

    async def test_get_tenant_returns_none_when_missing(self) -> None:
        backend = Backend("http://api", "token")
        backend._req = AsyncMock(side_effect=BackendError(404, "tenant not found"))

        self.assertIsNone(await backend.get_tenant(9))

    async def test_get_tenant_propagates_other_errors(self) -> None:
        backend = Backend("http://api", "token")
        backend._req = AsyncMock(side_effect=BackendError(500, "boom"))

        with self.assertRaises(BackendError):
            await backend.get_tenant(9)

    async def test_write_backs_use_tenant_routes(self) -> None:
        backend = Backend("http://api", "token")
        backend._req = AsyncMock(return_value=TENANT_ROW)

        await backend.update_tenant_playlist_id(3, "PL1")
        await backend.update_tenant_credential(3, "a2", "r2")

        self.assertEqual(backend._req.await_args_list[0].args, (
            "PUT",
            "/tenants/3/playlist",
            {"playlist_id": "PL1"},
        ))
        self.assertEqual(backend._req.await_args_list[1].args, (
            "PUT",
            "/tenants/3/credentials",
            {"access_token": "a2", "refresh_token": "r2"},
        ))

    def test_base_url_and_headers(self) -> None:
        backend = Backend("http://api/", "secret")

        self.assertEqual(backend.base, "http://api")
        self.assertEqual(backend.headers["X-Admin-Token"], "secret")


class ConsoleEventTests(unittest.IsolatedAsyncioTestCase):
    async def test_event_is_pushed_with_metadata(self) -> None:
        fake = AsyncMock()
        with patch.object(backend_module, "backend") as backend:
            backend.push_bot_log = fake
            await push_console_event("info", "Joined channel streamer", event="join", metadata={"channel": "streamer"})

        fake.assert_awaited_once_with(
            "Joined channel streamer",
            level="info",
            metadata={"channel": "streamer", "event": "join"},
        )

    async def test_push_failures_are_swallowed(self) -> None:
        with patch.object(backend_module, "backend") as backend:
            backend.push_bot_log = AsyncMock(side_effect=BackendError(503, "restarting"))
            await push_console_event("error", "Failed to join channel")

        backend.push_bot_log.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
