from __future__ import annotations

import abc
import logging
from typing import Any, Callable, Dict, List, Optional

from models.events import InboundEvent

logger = logging.getLogger("pulseboard.backends")

EventCallback = Callable[[InboundEvent], None]
StatusCallback = Callable[[str, Optional[str]], None]


class Subscription(abc.ABC):
    """Handle for one realtime channel registration.

    ``unsubscribe`` is synchronous and idempotent; the first call releases
    the channel and later calls are no-ops.
    """

    def __init__(
        self,
        channel: str,
        table: str,
        callback: EventCallback,
        *,
        event: str = "INSERT",
        schema: str = "public",
        on_status: Optional[StatusCallback] = None,
    ):
        self.channel = channel
        self.table = table
        self.event = event.upper()
        self.schema = schema
        self._callback = callback
        self._on_status = on_status
        self._closed = False
        self.release_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.release_count += 1
        self._release()

    @abc.abstractmethod
    def _release(self) -> None:
        raise NotImplementedError

    def matches(self, event: InboundEvent) -> bool:
        if event.table != self.table:
            return False
        return self.event == "*" or event.type.upper() == self.event

    def deliver(self, event: InboundEvent) -> bool:
        if self._closed:
            return False
        try:
            self._callback(event)
        except Exception:
            logger.exception("event callback failed on channel %s", self.channel)
        return True

    def report(self, status: str, error: Optional[str] = None) -> None:
        if self._closed or self._on_status is None:
            return
        try:
            self._on_status(status, error)
        except Exception:
            logger.exception("status callback failed on channel %s", self.channel)


class Backend(abc.ABC):
    @abc.abstractmethod
    async def fetch_rows(
        self,
        source: str,
        *,
        select: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows of ``source`` (newest-first when ordered descending)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self,
        channel: str,
        table: str,
        callback: EventCallback,
        *,
        event: str = "INSERT",
        schema: str = "public",
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        raise NotImplementedError

    def unsubscribe(self, handle: Subscription) -> None:
        handle.unsubscribe()

    async def close(self) -> None:
        return None
