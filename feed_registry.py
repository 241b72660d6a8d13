# pulseboard/feed_registry.py
# Purpose: Registry of realtime feed definitions with auto-discovery of drop-in feeds.
from __future__ import annotations

import importlib
import pkgutil
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel

from runtime.errors import FeedError


class FeedRegistryError(FeedError): ...


@dataclass(slots=True)
class FeedSpec:
    """Where a feed's rows come from and how many of them to keep."""

    name: str
    table: str
    channel: str
    model: Type[BaseModel]
    capacity: int
    source: str = ""
    id_field: str = "id"
    order_by: Optional[str] = "created_at"
    event: str = "INSERT"
    schema: str = "public"
    alert: Optional[Callable[[Any], bool]] = None
    summary: Optional[Callable[[Any], str]] = None
    description: str = ""
    refetch_on_event: bool = False

    @property
    def snapshot_source(self) -> str:
        return self.source or self.table

    def is_alert(self, item: Any) -> bool:
        if self.alert is None:
            return False
        try:
            return bool(self.alert(item))
        except (AttributeError, KeyError, TypeError, ValueError):
            return False

    def describe_item(self, item: Any) -> str:
        if self.summary is not None:
            try:
                return self.summary(item)
            except (AttributeError, KeyError, TypeError, ValueError):
                pass
        key = getattr(item, self.id_field, None)
        return f"{self.name} #{key}"


class FeedRegistry:
    def __init__(self):
        self._feeds: Dict[str, FeedSpec] = {}

    def register(self, spec: FeedSpec) -> None:
        if not spec.name or not isinstance(spec.name, str):
            raise FeedRegistryError("Feed name must be non-empty str")
        if spec.name in self._feeds:
            raise FeedRegistryError(f"Feed already registered: {spec.name}")
        if not (isinstance(spec.model, type) and issubclass(spec.model, BaseModel)):
            raise FeedRegistryError("Feed must declare a Pydantic BaseModel via model=")
        if not isinstance(spec.capacity, int) or spec.capacity <= 0:
            raise FeedRegistryError(f"Feed {spec.name}: capacity must be > 0")
        if not spec.table or not spec.channel:
            raise FeedRegistryError(f"Feed {spec.name}: table and channel are required")
        self._feeds[spec.name] = spec

    def register_spec(self, spec: FeedSpec, *, module: Optional[str] = None) -> None:
        existing = self._feeds.get(spec.name)
        if existing is spec:
            return
        try:
            self.register(spec)
        except FeedRegistryError as exc:
            context = f" from {module}" if module else ""
            raise FeedRegistryError(f"Failed to register {spec.name}{context}: {exc}") from exc

    def unregister(self, name: str) -> None:
        self._feeds.pop(name, None)

    def get(self, name: str) -> FeedSpec:
        try:
            return self._feeds[name]
        except KeyError as exc:
            raise FeedRegistryError(f"Unknown feed: {name}") from exc

    def with_capacity(self, name: str, capacity: int) -> FeedSpec:
        """Return a copy of ``name`` with a different capacity."""
        if capacity <= 0:
            raise FeedRegistryError(f"Feed {name}: capacity must be > 0")
        return replace(self.get(name), capacity=capacity)

    def list(self) -> List[str]:
        return sorted(self._feeds.keys())

    def describe(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for _, spec in sorted(self._feeds.items()):
            out.append(
                {
                    "name": spec.name,
                    "table": spec.table,
                    "channel": spec.channel,
                    "source": spec.snapshot_source,
                    "capacity": spec.capacity,
                    "id_field": spec.id_field,
                    "description": spec.description,
                    "refetch_on_event": spec.refetch_on_event,
                    "schema": spec.model.model_json_schema(),
                }
            )
        return out

    def __contains__(self, name: object) -> bool:
        return name in self._feeds


registry = FeedRegistry()


def _extract_specs(module: Any) -> Iterable[FeedSpec]:
    feed_obj = getattr(module, "FEED", None)
    feeds_obj = getattr(module, "FEEDS", None)
    specs: List[FeedSpec] = []
    if isinstance(feed_obj, FeedSpec):
        specs.append(feed_obj)
    if feeds_obj:
        if isinstance(feeds_obj, FeedSpec):
            specs.append(feeds_obj)
        else:
            specs.extend(spec for spec in feeds_obj if isinstance(spec, FeedSpec))
    return specs


def autodiscover_feeds(
    package: str = "feeds", target: Optional[FeedRegistry] = None
) -> FeedRegistry:
    reg = target if target is not None else registry
    pkg = importlib.import_module(package)
    for modinfo in pkgutil.iter_modules(pkg.__path__, pkg.__name__ + "."):
        short_name = modinfo.name.rsplit(".", 1)[-1]
        if short_name.startswith("_"):
            continue
        module = importlib.import_module(modinfo.name)
        for spec in _extract_specs(module):
            reg.register_spec(spec, module=modinfo.name)
    return reg
