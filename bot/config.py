from __future__ import annotations
import os
from pathlib import Path
from typing import Dict, List

import yaml

# ---- Env ----
# Full URL of the tenant store, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:7070')
# Token used for privileged requests to the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
TWITCH_CLIENT_ID = os.getenv('TWITCH_CLIENT_ID')
TWITCH_CLIENT_SECRET = os.getenv('TWITCH_CLIENT_SECRET')
BOT_USER_ID = os.getenv('BOT_USER_ID') or os.getenv('TWITCH_BOT_USER_ID')
BOT_ACCESS_TOKEN = os.getenv('BOT_ACCESS_TOKEN')
BOT_REFRESH_TOKEN = os.getenv('BOT_REFRESH_TOKEN')
GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID')
GOOGLE_CLIENT_SECRET = os.getenv('GOOGLE_CLIENT_SECRET')
YTMUSIC_AUTH_FILE = os.getenv('YTMUSIC_AUTH_FILE')
# Seconds between roster reconciliations; also the worst-case delay before a
# newly activated or deactivated tenant is joined or parted.
ROSTER_INTERVAL = int(os.getenv('ROSTER_INTERVAL', '300'))
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', '/bot/messages.yml'))
COMMANDS_FILE = os.getenv('COMMANDS_FILE', '/bot/commands.yml')

DEFAULT_COMMANDS = {
    'prefix': '!',
    'request': ['sr', 'request'],
    'now_playing': ['np'],
    'skip': ['skip'],
}

DEFAULT_MESSAGES = {
    'request_prompt': 'Please provide a song name or YouTube link!',
    'not_connected': 'YouTube Music is not connected. Please visit the dashboard to connect!',
    'no_results': 'No results found for "{query}"',
    'request_added': 'Added: {title} - {artists}',
    'request_added_link': 'Added to queue: {url}',
    'no_playlist': 'No playlist found!',
    'nothing_playing': 'Nothing is playing right now!',
    'now_playing': 'Now Playing: {title} by {channel}',
    'skipped': 'Skipped!',
    'queue_empty': 'Queue is empty!',
    'failed': 'Sorry, something went wrong with your request!',
}


def load_commands(path: str) -> Dict[str, List[str]]:
    cfg = DEFAULT_COMMANDS.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return {k: v if isinstance(v, list) else [v] for k, v in cfg.items()}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg
