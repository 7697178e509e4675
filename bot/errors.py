from __future__ import annotations
from typing import Optional


class AuthFailure(RuntimeError):
    """The linked music credential could not produce an access token."""


class InitFailure(RuntimeError):
    """A tenant session could not be bootstrapped."""


class RemoteApiError(RuntimeError):
    def __init__(self, status: Optional[int], detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class TrackUnavailable(RemoteApiError):
    pass


class PermissionDenied(RemoteApiError):
    pass


class PlaylistNotFound(RemoteApiError):
    pass


class ItemNotFound(RemoteApiError):
    """The playlist item was already removed."""
