from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from bot.errors import InitFailure
from bot.matching import MatchResolver
from bot.models import Tenant
from bot.playlists import PlaylistClient, build_credentials

logger = logging.getLogger(__name__)


class TenantStore(Protocol):
    async def get_tenant(self, tenant_id: int) -> Optional[Tenant]: ...


@dataclass
class Session:
    tenant_id: int
    playlists: PlaylistClient
    resolver: MatchResolver


class TenantSessionManager:
    """Process-lifetime cache of initialised per-tenant clients."""

    def __init__(
        self,
        store: TenantStore,
        *,
        google_client_id: Optional[str] = None,
        google_client_secret: Optional[str] = None,
        ytmusic_auth: Optional[str] = None,
        playlist_factory: Optional[Callable[[Tenant], PlaylistClient]] = None,
        resolver_factory: Optional[Callable[[Tenant], MatchResolver]] = None,
    ):
        self.store = store
        self._google_client_id = google_client_id
        self._google_client_secret = google_client_secret
        self._ytmusic_auth = ytmusic_auth
        self._playlist_factory = playlist_factory or self._default_playlist_client
        self._resolver_factory = resolver_factory or (lambda tenant: MatchResolver(auth=self._ytmusic_auth))
        self._sessions: Dict[int, Session] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def _default_playlist_client(self, tenant: Tenant) -> PlaylistClient:
        credentials = build_credentials(
            tenant.music_refresh_token,
            self._google_client_id,
            self._google_client_secret,
        )
        return PlaylistClient(credentials, tenant.playlist_name)

    async def get_session(self, tenant_id: int) -> Optional[Session]:
        session = self._sessions.get(tenant_id)
        if session:
            return session
        lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(tenant_id)
            if session:
                return session
            tenant = await self.store.get_tenant(tenant_id)
            if not tenant or not tenant.music_refresh_token:
                return None
            playlists = self._playlist_factory(tenant)
            resolver = self._resolver_factory(tenant)
            try:
                await resolver.warm_up()
                await playlists.probe()
            except Exception as exc:
                logger.warning("Session init failed for tenant %s: %s", tenant_id, exc)
                raise InitFailure(f"session init failed for tenant {tenant_id}") from exc
            session = Session(tenant_id=tenant_id, playlists=playlists, resolver=resolver)
            self._sessions[tenant_id] = session
            logger.info("Initialised session for %s", tenant.chat_login)
            return session

    def discard(self, tenant_id: int) -> None:
        self._sessions.pop(tenant_id, None)

    async def close(self) -> None:
        self._sessions.clear()
        self._locks.clear()
