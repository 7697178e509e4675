from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Callable, Optional, Set

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from bot.errors import (
    AuthFailure,
    ItemNotFound,
    PermissionDenied,
    PlaylistNotFound,
    RemoteApiError,
    TrackUnavailable,
)
from bot.models import DEFAULT_PLAYLIST_NAME, Track

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = 'https://oauth2.googleapis.com/token'
YOUTUBE_SCOPES = ['https://www.googleapis.com/auth/youtube']
PLAYLIST_DESCRIPTION = 'Auto-created by song request bot'
PLAYLIST_PRIVACY = 'unlisted'
PAGE_SIZE = 50

UNAVAILABLE_REASONS = {'videoNotFound', 'videoNotEmbeddable', 'videoUnavailable'}
FORBIDDEN_REASONS = {'playlistItemsNotAccessible', 'forbidden', 'playlistForbidden'}
MISSING_PLAYLIST_REASONS = {'playlistNotFound'}
MISSING_ITEM_REASONS = {'playlistItemNotFound'}


def build_credentials(refresh_token: str, client_id: Optional[str], client_secret: Optional[str]) -> Credentials:
    return Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=client_id,
        client_secret=client_secret,
        scopes=YOUTUBE_SCOPES,
    )


def _error_reasons(exc: HttpError) -> Set[str]:
    reasons: Set[str] = set()
    details = getattr(exc, 'error_details', None)
    if isinstance(details, list):
        for detail in details:
            if isinstance(detail, dict) and detail.get('reason'):
                reasons.add(str(detail['reason']))
    if reasons:
        return reasons
    try:
        data = json.loads(exc.content.decode('utf-8'))
    except (AttributeError, UnicodeDecodeError, ValueError):
        return reasons
    errors = (data.get('error') or {}).get('errors') if isinstance(data, dict) else None
    for item in errors or []:
        if isinstance(item, dict) and item.get('reason'):
            reasons.add(str(item['reason']))
    return reasons


def _status(exc: HttpError) -> Optional[int]:
    resp = getattr(exc, 'resp', None)
    status = getattr(resp, 'status', None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def translate_http_error(exc: HttpError, *, mutation: bool = False) -> Exception:
    """Map a YouTube API error onto the request-queue error taxonomy.

    ``mutation`` marks playlist item inserts, where a 403/404 speaks about the
    playlist or the video rather than about the call as a whole.
    """

    status = _status(exc)
    reasons = _error_reasons(exc)
    detail = ', '.join(sorted(reasons)) or str(exc)
    if status == 401:
        return AuthFailure(detail)
    if reasons & UNAVAILABLE_REASONS:
        return TrackUnavailable(status, detail)
    if reasons & MISSING_ITEM_REASONS:
        return ItemNotFound(status, detail)
    if reasons & MISSING_PLAYLIST_REASONS:
        return PlaylistNotFound(status, detail)
    if reasons & FORBIDDEN_REASONS or (mutation and status == 403):
        return PermissionDenied(status, detail)
    if status == 404:
        return PlaylistNotFound(status, detail)
    return RemoteApiError(status, detail)


class PlaylistClient:
    """Manages one tenant's request playlist through the YouTube Data API."""

    def __init__(
        self,
        credentials: Credentials,
        playlist_name: str = DEFAULT_PLAYLIST_NAME,
        *,
        service: Optional[Any] = None,
        service_factory: Optional[Callable[[Credentials], Any]] = None,
    ):
        self.credentials = credentials
        self.playlist_name = playlist_name or DEFAULT_PLAYLIST_NAME
        self._service = service
        self._service_factory = service_factory or (
            lambda creds: build('youtube', 'v3', credentials=creds, cache_discovery=False)
        )
        # httplib2 connections are not thread-safe.
        self._lock = asyncio.Lock()

    @property
    def youtube(self) -> Any:
        if self._service is None:
            self._service = self._service_factory(self.credentials)
        return self._service

    async def _ensure_access(self) -> None:
        if self.credentials.valid:
            return
        try:
            await asyncio.to_thread(self.credentials.refresh, GoogleAuthRequest())
        except RefreshError as exc:
            logger.warning("Google token refresh failed: %s", exc)
            raise AuthFailure('Google authentication failed; relink the YouTube account') from exc

    async def _call(self, request: Any, *, mutation: bool = False) -> Any:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as exc:
            raise translate_http_error(exc, mutation=mutation) from exc
        except RefreshError as exc:
            raise AuthFailure(str(exc)) from exc

    async def _execute(self, request: Any, *, mutation: bool = False) -> Any:
        async with self._lock:
            return await self._call(request, mutation=mutation)

    async def probe(self) -> None:
        await self._ensure_access()

    async def find_or_create_playlist(self, name: Optional[str] = None) -> str:
        await self._ensure_access()
        title = name or self.playlist_name
        wanted = title.strip().lower()

        page_token: Optional[str] = None
        while True:
            resp = await self._execute(self.youtube.playlists().list(
                part='id,snippet',
                mine=True,
                maxResults=PAGE_SIZE,
                pageToken=page_token,
            ))
            for playlist in resp.get('items') or []:
                snippet = playlist.get('snippet') or {}
                if (snippet.get('title') or '').strip().lower() == wanted and playlist.get('id'):
                    logger.info("Found existing playlist %s (%s)", title, playlist['id'])
                    return playlist['id']
            page_token = resp.get('nextPageToken')
            if not page_token:
                break

        created = await self._execute(self.youtube.playlists().insert(
            part='snippet,status',
            body={
                'snippet': {'title': title, 'description': PLAYLIST_DESCRIPTION},
                'status': {'privacyStatus': PLAYLIST_PRIVACY},
            },
        ))
        new_id = created.get('id') if isinstance(created, dict) else None
        if not new_id:
            raise RemoteApiError(None, 'playlist creation returned no id')
        logger.info("Created playlist %s (%s)", title, new_id)
        return new_id

    async def append_track(self, playlist_id: str, video_id: str) -> None:
        await self._ensure_access()
        await self._execute(self.youtube.playlistItems().insert(
            part='snippet',
            body={
                'snippet': {
                    'playlistId': playlist_id,
                    'resourceId': {'kind': 'youtube#video', 'videoId': video_id},
                },
            },
        ), mutation=True)
        logger.info("Added video %s to playlist %s", video_id, playlist_id)

    async def _first_item(self, playlist_id: str, part: str) -> Optional[dict]:
        # Callers hold self._lock.
        resp = await self._call(self.youtube.playlistItems().list(
            part=part,
            playlistId=playlist_id,
            maxResults=1,
        ))
        items = resp.get('items') or []
        return items[0] if items else None

    async def peek_head(self, playlist_id: str) -> Optional[Track]:
        await self._ensure_access()
        async with self._lock:
            item = await self._first_item(playlist_id, 'snippet,contentDetails')
        if not item:
            return None
        snippet = item.get('snippet') or {}
        details = item.get('contentDetails') or {}
        channel = snippet.get('videoOwnerChannelTitle') or snippet.get('channelTitle') or 'Unknown'
        video_id = details.get('videoId') or (snippet.get('resourceId') or {}).get('videoId') or ''
        return Track(
            title=snippet.get('title') or 'Unknown',
            video_id=video_id,
            artists=[channel],
            channel=channel,
        )

    async def remove_head(self, playlist_id: str) -> bool:
        """Delete the current first item; ``False`` when the playlist is empty.

        The read and the delete share one lock hold, so concurrent skips each
        remove a different item. An item deleted elsewhere in between still
        counts as skipped.
        """

        await self._ensure_access()
        async with self._lock:
            item = await self._first_item(playlist_id, 'id')
            if not item or not item.get('id'):
                return False
            try:
                await self._call(self.youtube.playlistItems().delete(id=item['id']))
            except ItemNotFound:
                logger.info("Head item %s of playlist %s was already removed", item['id'], playlist_id)
                return True
        logger.info("Removed head item %s from playlist %s", item['id'], playlist_id)
        return True

    async def clear(self, playlist_id: str) -> int:
        await self._ensure_access()
        deleted = 0
        while True:
            resp = await self._execute(self.youtube.playlistItems().list(
                part='id',
                playlistId=playlist_id,
                maxResults=PAGE_SIZE,
            ))
            ids = [item['id'] for item in resp.get('items') or [] if item.get('id')]
            if not ids:
                break
            for item_id in ids:
                try:
                    await self._execute(self.youtube.playlistItems().delete(id=item_id))
                except ItemNotFound:
                    continue
                deleted += 1
        logger.info("Cleared %d items from playlist %s", deleted, playlist_id)
        return deleted
