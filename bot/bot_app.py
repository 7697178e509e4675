from __future__ import annotations
import argparse
import asyncio
import logging
from typing import Dict, List, Optional

from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

from bot.backend import Backend, backend, push_console_event
from bot.config import (
    BOT_ACCESS_TOKEN,
    BOT_REFRESH_TOKEN,
    BOT_USER_ID,
    COMMANDS_FILE,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    LOG_LEVEL,
    MESSAGES_PATH,
    ROSTER_INTERVAL,
    TWITCH_CLIENT_ID,
    TWITCH_CLIENT_SECRET,
    YTMUSIC_AUTH_FILE,
    load_commands,
    load_messages,
)
from bot.dispatcher import CommandDispatcher, parse_command
from bot.models import Tenant
from bot.roster import RosterReconciler
from bot.sessions import TenantSessionManager

logger = logging.getLogger(__name__)


def _extract_subscription_id(response: object) -> Optional[str]:
    if not response:
        return None
    if isinstance(response, dict):
        data = response.get('data')
        if isinstance(data, list) and data and isinstance(data[0], dict):
            sub_id = data[0].get('id')
            if sub_id:
                return str(sub_id)
        return None
    subscription = getattr(response, 'subscription', None)
    sub_id = getattr(subscription, 'id', None) or getattr(response, 'id', None)
    return str(sub_id) if sub_id else None


class RequestBot(commands.Bot):
    """Single chat connection serving every active tenant's channel."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        token: str,
        refresh_token: str,
        store: Backend,
        sessions: TenantSessionManager,
        roster_interval: float = ROSTER_INTERVAL,
    ):
        if not token or not refresh_token or not bot_id:
            raise RuntimeError('token, refresh_token, and bot_id are required')
        self.commands_map = load_commands(COMMANDS_FILE)
        self.messages = load_messages(MESSAGES_PATH)
        prefix = self.commands_map['prefix'][0]
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=prefix,
            fetch_client_user=False,
        )
        self.bot_user_id = str(bot_id)
        self._user_token = token
        self._refresh_token = refresh_token
        self.tenant_store = store
        self.session_manager = sessions
        self.roster = RosterReconciler(store, self, interval=roster_interval)
        self.command_dispatcher = CommandDispatcher(store, sessions, messages=self.messages)
        self._subscription_ids: Dict[str, str] = {}
        self._credential_owners: Dict[str, Tenant] = {}
        self._reconciler_task: Optional[asyncio.Task] = None
        self.ready_event = asyncio.Event()

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self._user_token, self._refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tenant tokens are persisted to the backend through the refresh hook.
        return None

    async def event_ready(self) -> None:
        self._ensure_reconciler_running()
        self.ready_event.set()
        await push_console_event('info', 'Bot connected', event='lifecycle')

    def _ensure_reconciler_running(self) -> None:
        task = self._reconciler_task
        if task and not task.done():
            return
        self._reconciler_task = asyncio.create_task(self.roster.run())

    async def _cancel_reconciler(self) -> None:
        task = self._reconciler_task
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._reconciler_task = None

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        user_id = str(payload.user_id)
        if user_id == self.bot_user_id:
            self._user_token = payload.token
            self._refresh_token = payload.refresh_token
            return
        tenant = self._credential_owners.get(user_id)
        if not tenant:
            logger.debug("Token refreshed for unknown user %s", user_id)
            return
        try:
            await self.tenant_store.update_tenant_credential(tenant.id, payload.token, payload.refresh_token)
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to persist refreshed token for {tenant.chat_login}: {exc}',
                event='token',
                metadata={'channel': tenant.chat_login},
            )
            return
        tenant.chat_access_token = payload.token
        tenant.chat_refresh_token = payload.refresh_token
        logger.info("Refreshed chat token for %s", tenant.chat_login)

    # ---- chat transport used by the roster reconciler ----
    async def register_credential(self, tenant: Tenant) -> None:
        if not tenant.chat_access_token or not tenant.chat_refresh_token:
            raise RuntimeError('Tenant missing chat credentials')
        # add_token may refresh right away, so the owner must be known first.
        self._credential_owners[tenant.chat_user_id] = tenant
        await self.add_token(tenant.chat_access_token, tenant.chat_refresh_token)

    async def join_channel(self, tenant: Tenant) -> None:
        broadcaster_id = tenant.chat_user_id
        if not broadcaster_id:
            raise RuntimeError('Tenant missing broadcaster id')
        if broadcaster_id in self._subscription_ids:
            return
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=broadcaster_id,
            user_id=self.bot_user_id,
        )
        response = await self.subscribe_websocket(payload=payload, as_bot=True)
        sub_id = _extract_subscription_id(response)
        if not sub_id:
            raise RuntimeError('Subscription id unavailable')
        self._subscription_ids[broadcaster_id] = sub_id

    async def part_channel(self, tenant: Tenant) -> None:
        user_id = tenant.chat_user_id
        sub_id = self._subscription_ids.get(user_id)
        if sub_id:
            await self.delete_websocket_subscription(sub_id, force=True)
            self._subscription_ids.pop(user_id, None)
        # Parted tenants stop being refreshed and written back.
        self._credential_owners.pop(user_id, None)
        if user_id != self.bot_user_id:
            await self.remove_token(user_id)

    async def send_chat(
        self,
        tenant: Tenant,
        message: str,
        *,
        reply_to: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        try:
            partial = self.create_partialuser(tenant.chat_user_id, tenant.chat_login)
            await partial.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
                reply_to_message_id=reply_to,
            )
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to send message to {tenant.chat_login}: {exc}',
                event='message',
                metadata={**(metadata or {}), 'channel': tenant.chat_login, 'error': str(exc)},
            )
            return
        await push_console_event(
            'info',
            f'Sent message to {tenant.chat_login}',
            event='message',
            metadata={**(metadata or {}), 'sent_text': message, 'channel': tenant.chat_login},
        )

    async def event_message(self, message) -> None:
        chatter = message.chatter
        if getattr(chatter, 'id', None) == self.bot_user_id:
            return
        tenant = self.roster.tenant_for_channel(message.broadcaster.name)
        if not tenant:
            return
        command = parse_command(
            message.text,
            commands_map=self.commands_map,
            username=getattr(chatter, 'display_name', None) or chatter.name,
            tenant_id=tenant.id,
            channel=tenant.channel,
            moderator=bool(getattr(chatter, 'moderator', False)),
            broadcaster=bool(getattr(chatter, 'broadcaster', False)),
            message_id=getattr(message, 'id', None),
        )
        if not command:
            return
        logger.info("%s: %s ran %s %r", tenant.channel, command.username, command.kind.value, command.argument)
        reply = await self.command_dispatcher.dispatch(command)
        if reply:
            await self.send_chat(
                tenant,
                reply,
                reply_to=command.message_id,
                metadata={'command': command.kind.value},
            )

    async def shutdown(self) -> None:
        await self._cancel_reconciler()
        await self.session_manager.close()
        await super().close()


async def clear_tenant_playlist(store: Backend, sessions: TenantSessionManager, tenant_id: int) -> int:
    tenant = await store.get_tenant(tenant_id)
    if not tenant or not tenant.playlist_id:
        logger.error("Tenant %s has no managed playlist", tenant_id)
        return 0
    session = await sessions.get_session(tenant_id)
    if not session:
        logger.error("Tenant %s has no linked YouTube account", tenant_id)
        return 0
    return await session.playlists.clear(tenant.playlist_id)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Song request queue bot')
    parser.add_argument(
        '--clear-playlist',
        type=int,
        metavar='TENANT_ID',
        help='delete every item from the tenant playlist and exit',
    )
    return parser.parse_args(argv)


# ---- entry ----
async def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=LOG_LEVEL,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    await backend.start()
    sessions = TenantSessionManager(
        backend,
        google_client_id=GOOGLE_CLIENT_ID,
        google_client_secret=GOOGLE_CLIENT_SECRET,
        ytmusic_auth=YTMUSIC_AUTH_FILE,
    )
    try:
        if args.clear_playlist is not None:
            deleted = await clear_tenant_playlist(backend, sessions, args.clear_playlist)
            logger.info("Deleted %d playlist items", deleted)
            return
        bot = RequestBot(
            client_id=TWITCH_CLIENT_ID,
            client_secret=TWITCH_CLIENT_SECRET,
            bot_id=BOT_USER_ID,
            token=BOT_ACCESS_TOKEN,
            refresh_token=BOT_REFRESH_TOKEN,
            store=backend,
            sessions=sessions,
        )
        try:
            await bot.start()
        finally:
            await bot.shutdown()
    finally:
        await sessions.close()
        await backend.close()


def run() -> None:
    asyncio.run(main())


if __name__ == '__main__':
    run()
