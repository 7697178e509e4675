from __future__ import annotations
import asyncio
import logging
from typing import Dict, List, Optional, Protocol

from bot.backend import push_console_event
from bot.models import Tenant

logger = logging.getLogger(__name__)


class RosterStore(Protocol):
    async def list_active_tenants(self) -> List[Tenant]: ...


class ChatTransport(Protocol):
    async def register_credential(self, tenant: Tenant) -> None: ...

    async def join_channel(self, tenant: Tenant) -> None: ...

    async def part_channel(self, tenant: Tenant) -> None: ...


class RosterReconciler:
    """Keeps the shared chat connection's channels in line with the active tenants.

    ``joined`` maps channel login to the tenant snapshot it was joined for and
    only changes after a join or part call succeeded. Roster changes are
    picked up on the next tick, so membership can lag the store by up to one
    ``interval``.
    """

    def __init__(self, store: RosterStore, transport: ChatTransport, *, interval: float = 300):
        self.store = store
        self.transport = transport
        self.interval = interval
        self.joined: Dict[str, Tenant] = {}
        self._lock = asyncio.Lock()

    def tenant_for_channel(self, login: str) -> Optional[Tenant]:
        return self.joined.get(login.lower())

    async def reconcile(self) -> None:
        async with self._lock:
            try:
                tenants = await self.store.list_active_tenants()
            except Exception as exc:
                logger.warning("Failed to load active tenants: %s", exc)
                await push_console_event(
                    'error',
                    f'Failed to load active tenants: {exc}',
                    event='roster',
                )
                return
            active = {tenant.channel: tenant for tenant in tenants}

            # Part first: a renamed login shares its broadcaster subscription.
            for channel in [key for key in self.joined if key not in active]:
                tenant = self.joined[channel]
                try:
                    await self.transport.part_channel(tenant)
                except Exception as exc:
                    await push_console_event(
                        'error',
                        f'Failed to part channel {tenant.chat_login}: {exc}',
                        event='part_error',
                        metadata={'channel': tenant.chat_login, 'error': str(exc)},
                    )
                    continue
                self.joined.pop(channel, None)
                await push_console_event(
                    'info',
                    f'Parted channel {tenant.chat_login}',
                    event='part',
                    metadata={'channel': tenant.chat_login},
                )

            for channel, tenant in active.items():
                if channel in self.joined:
                    self.joined[channel] = tenant
                    continue
                try:
                    await self.transport.register_credential(tenant)
                    await self.transport.join_channel(tenant)
                except Exception as exc:
                    await push_console_event(
                        'error',
                        f'Failed to join channel {tenant.chat_login}: {exc}',
                        event='join_error',
                        metadata={'channel': tenant.chat_login, 'error': str(exc)},
                    )
                    continue
                self.joined[channel] = tenant
                await push_console_event(
                    'info',
                    f'Joined channel {tenant.chat_login}',
                    event='join',
                    metadata={'channel': tenant.chat_login},
                )

    async def run(self) -> None:
        while True:
            await self.reconcile()
            await asyncio.sleep(self.interval)
