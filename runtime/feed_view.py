from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from backends.base import Backend, Subscription
from feed_registry import FeedSpec
from models.events import InboundEvent
from models.state import FeedStateModel

from .errors import SnapshotFetchError, SubscriptionError
from .event_list import BoundedEventList, MergeResult, MergeStatus

logger = logging.getLogger("pulseboard.feed_view")

DEGRADED_STATUSES = ("CHANNEL_ERROR", "CLOSED", "TIMED_OUT")


class ViewState(str, Enum):
    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    SUBSCRIBED = "subscribed"
    UNMOUNTING = "unmounting"


ChangeListener = Callable[["FeedView", MergeResult], None]


class FeedView:
    """Owns one feed's event list, its subscription and its snapshot fetch.

    Mounting subscribes first and buffers events while the snapshot is in
    flight; once the snapshot lands the buffer is replayed through the same
    idempotent merge. Every callback handed to the backend is bound to the
    mount generation it was created in, so anything delivered after
    teardown is counted as stale and otherwise ignored.
    """

    def __init__(
        self,
        spec: FeedSpec,
        backend: Backend,
        *,
        on_change: Optional[ChangeListener] = None,
        poll_interval: Optional[float] = None,
        poll_fallback: bool = False,
        filters: Optional[Dict[str, Any]] = None,
        snapshot_limit: Optional[int] = None,
        diagnostics_limit: int = 20,
        refetch_on_event: Optional[bool] = None,
    ):
        self.spec = spec
        self.backend = backend
        self.on_change = on_change
        self.poll_interval = poll_interval if poll_interval and poll_interval > 0 else None
        self.poll_fallback = poll_fallback
        self.filters = dict(filters or {})
        self.snapshot_limit = snapshot_limit or spec.capacity
        # push events only signal a re-read; the rows come from the snapshot source
        self.refetch_on_event = (
            spec.refetch_on_event if refetch_on_event is None else refetch_on_event
        )
        self.events = self._new_list()
        self.state = FeedStateModel(name=spec.name, table=spec.table, capacity=spec.capacity)
        self.diagnostics: Deque[str] = deque(maxlen=max(diagnostics_limit, 1))
        self._subscription: Optional[Subscription] = None
        self._snapshot_task: asyncio.Task[List[Dict[str, Any]]] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._refetch_task: asyncio.Task[None] | None = None
        self._refetch_requested = False
        self._pending: Optional[List[InboundEvent]] = None
        self._generation = 0

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def lifecycle(self) -> ViewState:
        return ViewState(self.state.state)

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    @property
    def items(self) -> List[Any]:
        return self.events.items

    def _set_lifecycle(self, value: ViewState) -> None:
        self.state.state = value.value

    def _new_list(self) -> BoundedEventList:
        return BoundedEventList(
            self.spec.capacity, id_field=self.spec.id_field, model=self.spec.model
        )

    # ------------------------------------------------------------------
    # Lifecycle
    async def mount(self) -> None:
        if self.lifecycle is not ViewState.UNMOUNTED:
            await self.unmount()
        self._generation += 1
        gen = self._generation
        self._set_lifecycle(ViewState.MOUNTING)
        self.events = self._new_list()
        self.state.live = False
        self.state.loading = True
        self.state.snapshot_error = ""
        self.state.subscription_error = ""
        self.state.poll_error = ""
        self.state.item_count = 0
        self.state.mounted_at = time.time()
        self._pending = []

        await self._subscribe(gen)
        if gen != self._generation:
            return

        self._snapshot_task = asyncio.create_task(self._fetch())
        rows: List[Dict[str, Any]] = []
        try:
            rows = await self._snapshot_task
        except asyncio.CancelledError:
            if gen != self._generation:
                return
            raise
        except SnapshotFetchError as exc:
            self.state.snapshot_error = str(exc)
            logger.warning("snapshot for %s failed: %s", self.name, exc)
        finally:
            if gen == self._generation:
                self._snapshot_task = None
        if gen != self._generation:
            return

        self.events = BoundedEventList.from_snapshot(
            rows,
            self.spec.capacity,
            id_field=self.spec.id_field,
            model=self.spec.model,
        )
        pending, self._pending = self._pending or [], None
        if not self.refetch_on_event:
            for event in pending:
                self._merge(event)
        self.state.loading = False
        self.state.item_count = len(self.events)
        self._set_lifecycle(ViewState.SUBSCRIBED)
        if self.refetch_on_event and pending:
            self._schedule_refetch(gen)
        logger.info(
            "%s mounted: %d rows, %d buffered events, live=%s",
            self.name,
            len(self.events),
            len(pending),
            self.state.live,
        )
        if self.poll_interval and (not self.poll_fallback or not self.state.live):
            self._start_polling(gen)

    def close(self) -> None:
        """Release the subscription and cancel outstanding work, synchronously."""
        if self.lifecycle is ViewState.UNMOUNTED:
            return
        self._set_lifecycle(ViewState.UNMOUNTING)
        self._generation += 1
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.unsubscribe()
        self._pending = None
        self._refetch_requested = False
        for task in (self._snapshot_task, self._poll_task, self._refetch_task):
            if task is not None and not task.done():
                task.cancel()
        self.state.live = False
        self.state.loading = False
        self._set_lifecycle(ViewState.UNMOUNTED)
        logger.info("%s unmounted", self.name)

    async def unmount(self) -> None:
        tasks = [
            t
            for t in (self._snapshot_task, self._poll_task, self._refetch_task)
            if t is not None
        ]
        self.close()
        self._snapshot_task = None
        self._poll_task = None
        self._refetch_task = None
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def reload(self) -> None:
        await self.mount()

    async def __aenter__(self) -> "FeedView":
        await self.mount()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.unmount()

    # ------------------------------------------------------------------
    # Subscription
    async def _subscribe(self, gen: int) -> None:
        try:
            sub = await self.backend.subscribe(
                self.spec.channel,
                self.spec.table,
                self._event_handler(gen),
                event=self.spec.event,
                schema=self.spec.schema,
                on_status=self._status_handler(gen),
            )
        except SubscriptionError as exc:
            if gen == self._generation:
                self._degrade(str(exc))
            return
        if gen != self._generation:
            sub.unsubscribe()
            return
        self._subscription = sub
        self.state.live = True

    def _event_handler(self, gen: int) -> Callable[[InboundEvent], None]:
        def on_event(event: InboundEvent) -> None:
            if gen != self._generation:
                self.state.stale_events += 1
                logger.debug("%s: ignoring event after teardown", self.name)
                return
            if self._pending is not None:
                self._pending.append(event)
                return
            if self.refetch_on_event:
                self._schedule_refetch(gen)
                return
            self._merge(event)

        return on_event

    def _status_handler(self, gen: int) -> Callable[[str, Optional[str]], None]:
        def on_status(status: str, error: Optional[str] = None) -> None:
            if gen != self._generation:
                return
            if status == "SUBSCRIBED":
                self.state.live = True
                self.state.subscription_error = ""
            elif status in DEGRADED_STATUSES:
                self._degrade(error or status)

        return on_status

    def _degrade(self, reason: str) -> None:
        if not self.state.subscription_error:
            logger.warning("live updates unavailable for %s: %s", self.name, reason)
        self.state.live = False
        self.state.subscription_error = reason
        if (
            self.poll_interval
            and self.poll_fallback
            and self.lifecycle is ViewState.SUBSCRIBED
        ):
            self._start_polling(self._generation)

    # ------------------------------------------------------------------
    # Merging
    def _merge(self, event: Any) -> MergeResult:
        result = self.events.merge(event)
        if result.status is MergeStatus.ACCEPTED:
            self.state.accepted += 1
            self.state.last_event_at = time.time()
            if self.spec.is_alert(result.item):
                self.state.alerts += 1
        elif result.status is MergeStatus.DUPLICATE:
            self.state.duplicates += 1
        else:
            self.state.malformed += 1
            if result.error is not None:
                self.diagnostics.append(result.error.reason)
        self.state.item_count = len(self.events)
        if result.accepted and self.on_change is not None:
            try:
                self.on_change(self, result)
            except Exception:
                logger.exception("change listener failed for %s", self.name)
        return result

    def ingest(self, event: Any) -> MergeResult:
        """Merge an event from a source other than the subscription."""
        return self._merge(event)

    # ------------------------------------------------------------------
    # Polling
    async def _fetch(self) -> List[Dict[str, Any]]:
        return await self.backend.fetch_rows(
            self.spec.snapshot_source,
            order_by=self.spec.order_by,
            descending=True,
            limit=self.snapshot_limit,
            filters=self.filters or None,
        )

    def _start_polling(self, gen: int) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop(gen))

    async def _poll_loop(self, gen: int) -> None:
        try:
            while gen == self._generation:
                await asyncio.sleep(self.poll_interval or 0)
                if gen != self._generation:
                    break
                await self.poll_once()
        except asyncio.CancelledError:
            pass

    def _schedule_refetch(self, gen: int) -> None:
        """Re-read the snapshot source, coalescing events that land mid-fetch."""
        if self._refetch_task is not None and not self._refetch_task.done():
            self._refetch_requested = True
            return
        self._refetch_requested = False
        self._refetch_task = asyncio.create_task(self._refetch_loop(gen))

    async def _refetch_loop(self, gen: int) -> None:
        try:
            while gen == self._generation:
                self.state.refetches += 1
                await self.poll_once()
                if not self._refetch_requested:
                    break
                self._refetch_requested = False
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> List[MergeResult]:
        """Re-read the snapshot query and merge it oldest-first."""
        gen = self._generation
        self.state.polls += 1
        try:
            rows = await self._fetch()
        except SnapshotFetchError as exc:
            if not self.state.poll_error:
                logger.warning("poll for %s failed: %s", self.name, exc)
            self.state.poll_error = str(exc)
            return []
        if gen != self._generation or self.lifecycle is not ViewState.SUBSCRIBED:
            return []
        self.state.poll_error = ""
        self.state.snapshot_error = ""
        return [self._merge(row) for row in reversed(rows)]

    # ------------------------------------------------------------------
    def snapshot(self, *, limit: Optional[int] = None) -> Dict[str, Any]:
        items = self.events.as_dicts()
        if limit is not None:
            items = items[: max(limit, 0)]
        payload = self.state.model_dump()
        payload.update(
            {
                "status": self.state.status,
                "live_status": self.state.live_status,
                "channel": self.spec.channel,
                "items": items,
                "diagnostics": list(self.diagnostics),
            }
        )
        return payload
