from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from bot.config import ADMIN_TOKEN, BACKEND_URL
from bot.models import Tenant

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """Non-2xx answer from the tenant store."""

    def __init__(self, status: int, detail: Any):
        text = detail if isinstance(detail, str) else str(detail)
        super().__init__(text)
        self.status = status
        self.detail = text


def _is_json(response: aiohttp.ClientResponse) -> bool:
    return response.headers.get('content-type', '').startswith('application/json')


async def _error_detail(response: aiohttp.ClientResponse) -> str:
    detail: Any = None
    if _is_json(response):
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            body = None
        detail = body.get('detail') if isinstance(body, dict) else body
    if isinstance(detail, list):
        # FastAPI validation errors arrive as a list of dicts.
        detail = '; '.join(str(item.get('msg', item)) if isinstance(item, dict) else str(item) for item in detail)
    return str(detail) if detail else await response.text()


class Backend:
    """HTTP client for the tenant and credential store."""

    def __init__(self, base_url: str, admin_token: str):
        self.base = base_url.rstrip('/')
        self.headers = {'X-Admin-Token': admin_token}
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(headers=self.headers)

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        await self.start()
        async with self.session.request(method, self.base + path, json=payload) as r:
            if r.status >= 400:
                detail = await _error_detail(r)
                raise BackendError(r.status, detail or f"{method} {path} failed")
            if _is_json(r):
                return await r.json()
            return await r.text()

    async def list_active_tenants(self) -> List[Tenant]:
        rows = await self._req('GET', "/tenants?active=1")
        return [Tenant.from_row(row) for row in rows]

    async def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        try:
            row = await self._req('GET', f"/tenants/{tenant_id}")
        except BackendError as exc:
            if exc.status == 404:
                return None
            raise
        return Tenant.from_row(row)

    async def update_tenant_playlist_id(self, tenant_id: int, playlist_id: str) -> None:
        await self._req('PUT', f"/tenants/{tenant_id}/playlist", {'playlist_id': playlist_id})

    async def update_tenant_credential(self, tenant_id: int, access_token: str, refresh_token: str) -> None:
        await self._req('PUT', f"/tenants/{tenant_id}/credentials", {
            'access_token': access_token,
            'refresh_token': refresh_token,
        })

    async def push_bot_log(self, message: str, *, level: str = 'info', metadata: Optional[Dict[str, Any]] = None) -> None:
        await self._req('POST', "/bot/logs", {
            'source': 'bot',
            'level': level,
            'message': message,
            'metadata': metadata or {},
        })


backend = Backend(BACKEND_URL, ADMIN_TOKEN)


async def push_console_event(
    level: str,
    message: str,
    *,
    event: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Log ``message`` and mirror it to the backend console stream.

    Never raises; the backend may be down or restarting.
    """

    details: Dict[str, Any] = {**(metadata or {})}
    if event and 'event' not in details:
        details['event'] = event
    logger.log(logging.ERROR if level == 'error' else logging.INFO, message)
    try:
        await backend.push_bot_log(message, level=level, metadata=details)
    except Exception:
        logger.debug("Console event not delivered", exc_info=True)
