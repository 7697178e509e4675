import asyncio
import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bot.errors import AuthFailure, InitFailure
from bot.models import Tenant
from bot.sessions import TenantSessionManager


def _tenant(**overrides) -> Tenant:
    values = dict(id=1, chat_login='Streamer', chat_user_id='100', music_refresh_token='refresh')
    values.update(overrides)
    return Tenant(**values)


class TenantSessionManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = MagicMock()
        self.store.get_tenant = AsyncMock(return_value=_tenant())
        self.playlists = MagicMock()
        self.playlists.probe = AsyncMock()
        self.resolver = MagicMock()
        self.resolver.warm_up = AsyncMock()
        self.playlist_factory = MagicMock(return_value=self.playlists)
        self.resolver_factory = MagicMock(return_value=self.resolver)
        self.manager = TenantSessionManager(
            self.store,
            playlist_factory=self.playlist_factory,
            resolver_factory=self.resolver_factory,
        )

    async def test_session_is_cached_after_first_use(self) -> None:
        first = await self.manager.get_session(1)
        second = await self.manager.get_session(1)

        self.assertIs(first, second)
        self.assertIs(first.playlists, self.playlists)
        self.assertIs(first.resolver, self.resolver)
        self.store.get_tenant.assert_awaited_once_with(1)
        self.playlist_factory.assert_called_once()
        self.playlists.probe.assert_awaited_once()
        self.resolver.warm_up.assert_awaited_once()

    async def test_concurrent_first_use_initialises_once(self) -> None:
        first, second = await asyncio.gather(
            self.manager.get_session(1),
            self.manager.get_session(1),
        )

        self.assertIs(first, second)
        self.playlist_factory.assert_called_once()

    async def test_tenant_without_music_account_has_no_session(self) -> None:
        self.store.get_tenant.return_value = _tenant(music_refresh_token=None)

        self.assertIsNone(await self.manager.get_session(1))
        self.playlist_factory.assert_not_called()

    async def test_unknown_tenant_has_no_session(self) -> None:
        self.store.get_tenant.return_value = None

        self.assertIsNone(await self.manager.get_session(9))

    async def test_failed_initialisation_is_not_cached(self) -> None:
        """
        Verify a rejected credential surfaces as InitFailure and is retried.

        Code customers: the dispatcher maps InitFailure caused by AuthFailure to
        the "not connected" reply, and relies on the next request trying again.
        """
        self.playlists.probe.side_effect = [AuthFailure('expired'), None]

        with self.assertRaises(InitFailure) as ctx:
            await self.manager.get_session(1)
        self.assertIsInstance(ctx.exception.__cause__, AuthFailure)

        session = await self.manager.get_session(1)

        self.assertIsNotNone(session)
        self.assertEqual(self.playlist_factory.call_count, 2)

    async def test_discard_and_close_drop_cached_sessions(self) -> None:
        await self.manager.get_session(1)
        self.manager.discard(1)
        await self.manager.get_session(1)
        self.assertEqual(self.playlist_factory.call_count, 2)

        await self.manager.close()
        await self.manager.get_session(1)
        self.assertEqual(self.playlist_factory.call_count, 3)


if __name__ == '__main__':
    unittest.main()
