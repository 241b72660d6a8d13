from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from backends.base import Backend
from feed_registry import FeedRegistry, FeedSpec, autodiscover_feeds, registry as FEED_REGISTRY
from runtime.event_list import MergeResult
from runtime.feed_view import FeedView

logger = logging.getLogger("pulseboard.board")

# Autodiscover drop-in feeds at import time
autodiscover_feeds("feeds")

ItemListener = Callable[[str, Any, bool], Awaitable[None]]


def _noop_listener(feed: str, item: Any, alert: bool) -> Awaitable[None]:
    return asyncio.sleep(0)


class Board:
    """A set of live feeds sharing one backend.

    Accepted items from every view are queued and handed to ``on_item`` by a
    single sink task, so a slow listener never blocks event delivery.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        feed_registry: Optional[FeedRegistry] = None,
        on_item: Optional[ItemListener] = None,
        poll_interval: Optional[float] = None,
        poll_fallback: Optional[bool] = None,
        capacities: Optional[Dict[str, int]] = None,
        filters: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.backend = backend
        self.feed_registry = feed_registry or FEED_REGISTRY
        self.on_item: ItemListener = on_item or _noop_listener
        if poll_interval is None and os.getenv("PULSE_POLL_INTERVAL"):
            poll_interval = float(os.getenv("PULSE_POLL_INTERVAL", "0"))
        self.poll_interval = poll_interval
        if poll_fallback is None:
            poll_fallback = os.getenv("PULSE_POLL_FALLBACK", "true").lower() == "true"
        self.poll_fallback = poll_fallback
        self.capacities = dict(capacities or {})
        self.filters = dict(filters or {})
        self.alert_counts: Dict[str, int] = {}
        self._views: Dict[str, FeedView] = {}
        self._queue: asyncio.Queue[tuple[str, Any, bool]] = asyncio.Queue()
        self._task_group: set[asyncio.Task[Any]] = set()
        self._sink_task: asyncio.Task[Any] | None = None
        self._shutting_down = False

    @property
    def feeds(self) -> List[str]:
        return list(self._views.keys())

    def view(self, name: str) -> FeedView:
        try:
            return self._views[name]
        except KeyError:
            raise KeyError(f"Feed not open: {name}") from None

    def _spec_for(self, name: str) -> FeedSpec:
        capacity = self.capacities.get(name)
        if capacity is not None:
            return self.feed_registry.with_capacity(name, capacity)
        return self.feed_registry.get(name)

    async def start(self, feeds: Optional[Iterable[str]] = None) -> List[str]:
        self._shutting_down = False
        if self._sink_task is None or self._sink_task.done():
            self._sink_task = self._track_task(self._sink())
        names = list(feeds) if feeds is not None else self.feed_registry.list()
        for name in names:
            await self.open_feed(name)
        return self.feeds

    async def open_feed(self, name: str) -> FeedView:
        current = self._views.get(name)
        if current is not None:
            await current.mount()
            return current
        view = FeedView(
            self._spec_for(name),
            self.backend,
            on_change=self._on_change,
            poll_interval=self.poll_interval,
            poll_fallback=self.poll_fallback,
            filters=self.filters.get(name),
        )
        self._views[name] = view
        self.alert_counts.setdefault(name, 0)
        await view.mount()
        return view

    async def reload_feed(self, name: str) -> FeedView:
        view = self.view(name)
        await view.reload()
        return view

    async def close_feed(self, name: str) -> bool:
        view = self._views.pop(name, None)
        if view is None:
            return False
        await view.unmount()
        return True

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        for name in list(self._views):
            await self.close_feed(name)
        tasks = list(self._task_group)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task_group.clear()
        self._sink_task = None

    def _track_task(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._task_group.add(task)
        task.add_done_callback(self._task_group.discard)
        return task

    def _on_change(self, view: FeedView, result: MergeResult) -> None:
        alert = view.spec.is_alert(result.item)
        if alert:
            self.alert_counts[view.name] = self.alert_counts.get(view.name, 0) + 1
        self._queue.put_nowait((view.name, result.item, alert))

    async def _sink(self) -> None:
        try:
            while True:
                feed, item, alert = await self._queue.get()
                try:
                    await self.on_item(feed, item, alert)
                except Exception:
                    logger.exception("item listener failed for %s", feed)
        except asyncio.CancelledError:
            pass

    def describe(self, feed: str, item: Any) -> str:
        view = self._views.get(feed)
        spec = view.spec if view is not None else self.feed_registry.get(feed)
        return spec.describe_item(item)

    def snapshot(self, *, limit: Optional[int] = None) -> Dict[str, Any]:
        feeds = []
        for name, view in self._views.items():
            entry = view.snapshot(limit=limit)
            entry["alert_count"] = self.alert_counts.get(name, 0)
            feeds.append(entry)
        return {"feeds": feeds, "alerts": dict(self.alert_counts)}
