from __future__ import annotations
import asyncio
import logging
import re
from collections import Counter
from typing import Any, Callable, List, Mapping, Optional

from ytmusicapi import YTMusic

from bot.models import UNKNOWN_ARTIST, Track

logger = logging.getLogger(__name__)

# Order matters: canonical watch URL, short link, music subdomain.
YOUTUBE_PATTERNS = [
    re.compile(r"(?:https?://)?(?:www\.)?youtube\.com/watch\?(?:\S*&)?v=([\w-]{11})(?![\w-])", re.I),
    re.compile(r"(?:https?://)?(?:www\.)?youtu\.be/([\w-]{11})(?![\w-])", re.I),
    re.compile(r"(?:https?://)?music\.youtube\.com/watch\?(?:\S*&)?v=([\w-]{11})(?![\w-])", re.I),
]

SONG_RESULT_TYPE = 'song'


def extract_direct_video_id(text: str) -> Optional[str]:
    for pat in YOUTUBE_PATTERNS:
        m = pat.search(text or '')
        if m:
            return m.group(1)
    return None


def _bigrams(value: str) -> Counter:
    return Counter(value[i:i + 2] for i in range(len(value) - 1))


def compare_two_strings(first: str, second: str) -> float:
    """Dice's coefficient over character bigrams, ignoring whitespace."""

    first = re.sub(r"\s+", '', first)
    second = re.sub(r"\s+", '', second)
    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0
    overlap = sum((_bigrams(first) & _bigrams(second)).values())
    return (2.0 * overlap) / (len(first) + len(second) - 2)


def _artist_name(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        name = value.get('name')
        if isinstance(name, str) and name.strip():
            return name.strip()
    return None


def extract_artists(item: Mapping[str, Any]) -> List[str]:
    """Return artist names from any of the catalog's payload shapes.

    Handled variants: ``artists`` as a list of objects or strings, ``artist``
    as a single object, ``artist`` as a plain string. Never returns an empty
    list.
    """

    artists: List[str] = []
    many = item.get('artists')
    single = item.get('artist')
    if isinstance(many, list):
        artists = [name for name in (_artist_name(a) for a in many) if name]
    elif isinstance(single, Mapping):
        name = _artist_name(single)
        artists = [name] if name else []
    elif isinstance(single, str):
        name = _artist_name(single)
        artists = [name] if name else []
    return artists or [UNKNOWN_ARTIST]


def _result_type(item: Mapping[str, Any]) -> str:
    raw = item.get('resultType') or item.get('type') or ''
    return str(raw).strip().lower()


def _title(item: Mapping[str, Any]) -> str:
    return item.get('title') or item.get('name') or ''


def _haystack(item: Mapping[str, Any]) -> str:
    names = [name for name in extract_artists(item) if name != UNKNOWN_ARTIST]
    return f"{_title(item)} {' '.join(names)}".lower()


def pick_best_song(query: str, results: List[Mapping[str, Any]]) -> Optional[Track]:
    # Songs without a video id cannot be queued, so they never compete.
    songs = [
        r for r in results
        if isinstance(r, Mapping) and _result_type(r) == SONG_RESULT_TYPE and r.get('videoId')
    ]
    if not songs:
        return None
    needle = query.lower()
    best = songs[0]
    best_score = compare_two_strings(needle, _haystack(best))
    for song in songs[1:]:
        score = compare_two_strings(needle, _haystack(song))
        # Strictly greater keeps the earliest catalog entry on ties.
        if score > best_score:
            best, best_score = song, score
    track = Track(
        title=_title(best) or 'Unknown Song',
        video_id=best['videoId'],
        artists=extract_artists(best),
        duration=best.get('duration'),
    )
    logger.info("Matched %r to %s - %s (%.2f)", query, track.title, ', '.join(track.artists), best_score)
    return track


class MatchResolver:
    def __init__(
        self,
        *,
        auth: Optional[str] = None,
        client_factory: Optional[Callable[[], YTMusic]] = None,
    ):
        self._auth = auth
        self._client_factory = client_factory or self._default_client
        self._client: Optional[YTMusic] = None

    def _default_client(self) -> YTMusic:
        if self._auth:
            return YTMusic(self._auth)
        return YTMusic()

    async def warm_up(self) -> None:
        if self._client is None:
            self._client = await asyncio.to_thread(self._client_factory)

    async def search_best_match(self, query: str) -> Optional[Track]:
        await self.warm_up()
        results = await asyncio.to_thread(self._client.search, query)
        track = pick_best_song(query, list(results or []))
        if track is None:
            logger.info("No songs found for query %r", query)
        return track
