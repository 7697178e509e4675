from __future__ import annotations
import enum
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

UNKNOWN_ARTIST = 'Unknown Artist'
DEFAULT_PLAYLIST_NAME = 'Requests'


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


@dataclass
class Tenant:
    id: int
    chat_login: str
    chat_user_id: str
    chat_access_token: Optional[str] = None
    chat_refresh_token: Optional[str] = None
    music_refresh_token: Optional[str] = None
    playlist_id: Optional[str] = None
    playlist_name: str = DEFAULT_PLAYLIST_NAME
    active: bool = True

    @property
    def channel(self) -> str:
        return self.chat_login.lower()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Tenant':
        return cls(
            id=int(row['id']),
            chat_login=str(row['chat_login']),
            chat_user_id=str(row.get('chat_user_id') or ''),
            chat_access_token=row.get('chat_access_token'),
            chat_refresh_token=row.get('chat_refresh_token'),
            music_refresh_token=row.get('music_refresh_token'),
            playlist_id=row.get('playlist_id'),
            playlist_name=row.get('playlist_name') or DEFAULT_PLAYLIST_NAME,
            active=bool(row.get('active', True)),
        )


@dataclass
class Track:
    title: str
    video_id: str
    artists: List[str] = field(default_factory=lambda: [UNKNOWN_ARTIST])
    duration: Optional[str] = None
    channel: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.artists:
            self.artists = [UNKNOWN_ARTIST]

    @property
    def url(self) -> str:
        return watch_url(self.video_id)

    @classmethod
    def direct(cls, video_id: str) -> 'Track':
        # Link requests skip the catalog, so there is no metadata to carry.
        return cls(title=watch_url(video_id), video_id=video_id)


class CommandKind(str, enum.Enum):
    REQUEST = 'request'
    NOW_PLAYING = 'now_playing'
    SKIP = 'skip'


@dataclass
class Command:
    kind: CommandKind
    argument: str
    username: str
    tenant_id: int
    channel: str
    moderator: bool = False
    broadcaster: bool = False
    message_id: Optional[str] = None

    @property
    def privileged(self) -> bool:
        return self.moderator or self.broadcaster
