from __future__ import annotations
import logging
from typing import Dict, List, Optional, Protocol

from bot.backend import push_console_event
from bot.config import DEFAULT_MESSAGES
from bot.errors import AuthFailure, InitFailure, PlaylistNotFound
from bot.matching import extract_direct_video_id
from bot.models import Command, CommandKind, Tenant, Track
from bot.sessions import Session, TenantSessionManager

logger = logging.getLogger(__name__)


class TenantStore(Protocol):
    async def get_tenant(self, tenant_id: int) -> Optional[Tenant]: ...

    async def update_tenant_playlist_id(self, tenant_id: int, playlist_id: str) -> None: ...


def parse_command(
    text: str,
    *,
    commands_map: Dict[str, List[str]],
    username: str,
    tenant_id: int,
    channel: str,
    moderator: bool = False,
    broadcaster: bool = False,
    message_id: Optional[str] = None,
) -> Optional[Command]:
    content = (text or '').strip()
    prefix = commands_map['prefix'][0]
    if not content.startswith(prefix):
        return None
    parts = content[len(prefix):].split(None, 1)
    if not parts:
        return None
    name = parts[0].lower()
    argument = parts[1] if len(parts) > 1 else ''
    if name in commands_map['request']:
        kind = CommandKind.REQUEST
    elif name in commands_map['now_playing']:
        kind = CommandKind.NOW_PLAYING
    elif name in commands_map['skip']:
        kind = CommandKind.SKIP
    else:
        return None
    # now-playing and skip only match the bare command
    if kind is not CommandKind.REQUEST and argument:
        return None
    return Command(
        kind=kind,
        argument=argument,
        username=username,
        tenant_id=tenant_id,
        channel=channel,
        moderator=moderator,
        broadcaster=broadcaster,
        message_id=message_id,
    )


def _is_auth_failure(exc: BaseException) -> bool:
    if isinstance(exc, AuthFailure):
        return True
    return isinstance(exc, InitFailure) and isinstance(exc.__cause__, AuthFailure)


class CommandDispatcher:
    """Turns a parsed chat command into a playlist mutation and a reply."""

    def __init__(
        self,
        store: TenantStore,
        sessions: TenantSessionManager,
        *,
        messages: Optional[Dict[str, str]] = None,
    ):
        self.store = store
        self.sessions = sessions
        self.messages = dict(DEFAULT_MESSAGES)
        if messages:
            self.messages.update(messages)

    async def dispatch(self, command: Command) -> Optional[str]:
        if command.kind is CommandKind.REQUEST:
            return await self.handle_request(command)
        if command.kind is CommandKind.NOW_PLAYING:
            return await self.handle_now_playing(command)
        if command.kind is CommandKind.SKIP:
            return await self.handle_skip(command)
        return None

    async def _failure(self, command: Command, exc: Exception) -> str:
        metadata = {'channel': command.channel, 'command': command.kind.value}
        if _is_auth_failure(exc):
            self.sessions.discard(command.tenant_id)
            await push_console_event(
                'error',
                f'Music credential rejected for {command.channel}: {exc}',
                event='auth',
                metadata=metadata,
            )
            return self.messages['not_connected']
        logger.error("%s failed for %s in %s", command.kind.value, command.username, command.channel, exc_info=exc)
        await push_console_event(
            'error',
            f'Failed {command.kind.value} for {command.username}: {exc}',
            metadata=metadata,
        )
        return self.messages['failed']

    async def _load(self, command: Command) -> Optional[Tenant]:
        tenant = await self.store.get_tenant(command.tenant_id)
        if not tenant:
            logger.warning("Tenant %s for channel %s not found", command.tenant_id, command.channel)
        return tenant

    async def _resolve_playlist_id(self, session: Session, tenant: Tenant) -> str:
        if tenant.playlist_id:
            return tenant.playlist_id
        playlist_id = await session.playlists.find_or_create_playlist(tenant.playlist_name)
        await self.store.update_tenant_playlist_id(tenant.id, playlist_id)
        tenant.playlist_id = playlist_id
        return playlist_id

    async def _append(self, session: Session, tenant: Tenant, video_id: str) -> None:
        remembered = bool(tenant.playlist_id)
        playlist_id = await self._resolve_playlist_id(session, tenant)
        try:
            await session.playlists.append_track(playlist_id, video_id)
        except PlaylistNotFound:
            if not remembered:
                raise
            logger.warning("Playlist %s of %s is gone; recreating", playlist_id, tenant.chat_login)
            tenant.playlist_id = None
            playlist_id = await self._resolve_playlist_id(session, tenant)
            await session.playlists.append_track(playlist_id, video_id)

    async def handle_request(self, command: Command) -> Optional[str]:
        query = command.argument.strip()
        if not query:
            return self.messages['request_prompt']
        try:
            tenant = await self._load(command)
            if not tenant:
                return None
            session = await self.sessions.get_session(tenant.id)
            if session is None:
                return self.messages['not_connected']
            video_id = extract_direct_video_id(query)
            if video_id:
                track = Track.direct(video_id)
            else:
                track = await session.resolver.search_best_match(query)
                if track is None:
                    return self.messages['no_results'].format(query=query)
            await self._append(session, tenant, track.video_id)
        except Exception as exc:
            return await self._failure(command, exc)
        if video_id:
            return self.messages['request_added_link'].format(url=track.url)
        return self.messages['request_added'].format(
            title=track.title,
            artists=', '.join(track.artists),
        )

    async def handle_now_playing(self, command: Command) -> Optional[str]:
        try:
            tenant = await self._load(command)
            if not tenant:
                return None
            session = await self.sessions.get_session(tenant.id)
            if session is None or not tenant.playlist_id:
                return self.messages['no_playlist']
            track = await session.playlists.peek_head(tenant.playlist_id)
        except PlaylistNotFound:
            return self.messages['no_playlist']
        except Exception as exc:
            return await self._failure(command, exc)
        if not track:
            return self.messages['nothing_playing']
        return self.messages['now_playing'].format(title=track.title, channel=track.channel)

    async def handle_skip(self, command: Command) -> Optional[str]:
        if not command.privileged:
            return None
        try:
            tenant = await self._load(command)
            if not tenant:
                return None
            session = await self.sessions.get_session(tenant.id)
            if session is None or not tenant.playlist_id:
                return self.messages['no_playlist']
            skipped = await session.playlists.remove_head(tenant.playlist_id)
        except PlaylistNotFound:
            return self.messages['no_playlist']
        except Exception as exc:
            return await self._failure(command, exc)
        if skipped:
            return self.messages['skipped']
        return self.messages['queue_empty']
