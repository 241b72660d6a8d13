from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional

from models.events import InboundEvent
from runtime.errors import SnapshotFetchError, SubscriptionError

from .base import Backend, EventCallback, StatusCallback, Subscription


class MemorySubscription(Subscription):
    def __init__(self, backend: "InMemoryBackend", *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._backend = backend

    def _release(self) -> None:
        if self in self._backend._subs:
            self._backend._subs.remove(self)


class InMemoryBackend(Backend):
    """Process-local event source.

    Rows live in plain lists per table. ``insert`` stores a row and publishes
    it to every matching subscription synchronously, which is how the UI
    thread would see a realtime callback. ``emit`` publishes without storing.

    Failure switches (``fail_fetch``, ``fail_subscribe``) and ``fetch_gate``
    let callers hold a snapshot open or make it fail.
    """

    def __init__(self, tables: Optional[Mapping[str, Iterable[Mapping[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self._subs: List[MemorySubscription] = []
        self.fail_fetch: Optional[str] = None
        self.fail_subscribe: Optional[str] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.fetch_calls = 0
        self.subscribe_calls = 0

    @property
    def active_subscriptions(self) -> List[MemorySubscription]:
        return list(self._subs)

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
        self.fetch_calls += 1
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail_fetch:
            raise SnapshotFetchError(source, self.fail_fetch)
        rows = [dict(r) for r in self.tables.get(source, [])]
        if filters:
            rows = [r for r in rows if all(r.get(k) == v for k, v in filters.items())]
        # latest insert first, so ties in order_by stay newest-first
        rows.reverse()
        if order_by:
            rows.sort(
                key=lambda r: (r.get(order_by) is not None, r.get(order_by)),
                reverse=descending,
            )
        elif not descending:
            rows.reverse()
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return rows

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
        self.subscribe_calls += 1
        await asyncio.sleep(0)
        if self.fail_subscribe:
            raise SubscriptionError(channel, self.fail_subscribe)
        sub = MemorySubscription(
            self,
            channel,
            table,
            callback,
            event=event,
            schema=schema,
            on_status=on_status,
        )
        self._subs.append(sub)
        sub.report("SUBSCRIBED")
        return sub

    # ------------------------------------------------------------------
    # publishing
    # ------------------------------------------------------------------
    def insert(self, table: str, row: Mapping[str, Any], *, schema: str = "public") -> InboundEvent:
        self.tables.setdefault(table, []).append(dict(row))
        return self.emit(table, row, schema=schema)

    def emit(
        self,
        table: str,
        payload: Mapping[str, Any],
        *,
        event_type: str = "INSERT",
        schema: str = "public",
    ) -> InboundEvent:
        event = InboundEvent(table=table, type=event_type, schema=schema, record=dict(payload))
        for sub in list(self._subs):
            if sub.matches(event):
                sub.deliver(event)
        return event

    def fail_channel(self, channel: str, error: str = "transport dropped") -> None:
        """Report CHANNEL_ERROR to every subscription on ``channel``."""
        for sub in list(self._subs):
            if sub.channel == channel:
                sub.report("CHANNEL_ERROR", error)
