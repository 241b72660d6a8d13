# pulseboard/runtime/errors.py
# Purpose: Error taxonomy shared by feed views, backends and the registry.
from __future__ import annotations

from typing import Any, Optional


class FeedError(Exception): ...


class SnapshotFetchError(FeedError):
    """The one-time bulk read for a feed failed."""

    def __init__(self, source: str, message: str, *, status: Optional[int] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status = status


class SubscriptionError(FeedError):
    """The realtime channel failed to establish or was dropped."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class MalformedEventError(FeedError):
    """An inbound payload failed validation and was dropped."""

    def __init__(self, reason: str, payload: Any = None):
        super().__init__(reason)
        self.reason = reason
        self.payload = payload
