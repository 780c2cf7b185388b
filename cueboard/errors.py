"""
Error Types
Exceptions shared by the relay, the settings store and the playback node.
"""

from typing import Optional


class CueboardError(Exception):
    """Base class for all cueboard errors."""


class MalformedMessage(CueboardError):
    """A message failed to parse as a known protocol message."""

    def __init__(self, message: str, raw: Optional[object] = None):
        super().__init__(message)
        self.raw = raw


class ClipLoadFailure(CueboardError):
    """Fetching or decoding one clip failed."""

    def __init__(self, clip_id: str, reason: str):
        super().__init__(f"{clip_id}: {reason}")
        self.clip_id = clip_id
        self.reason = reason


class PersistenceError(CueboardError):
    """The settings document could not be written to disk."""


class CorruptState(CueboardError):
    """The settings file exists but does not hold a valid settings document."""


class ConnectionLoss(CueboardError):
    """The relay connection dropped."""
