from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Deque,
    Dict,
    Hashable,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Type,
)

from pydantic import BaseModel, ValidationError

from models.events import InboundEvent

from .errors import MalformedEventError

logger = logging.getLogger("pulseboard.event_list")


class MergeStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    MALFORMED = "malformed"


@dataclass
class MergeResult:
    """Outcome of a single merge; never raised, always returned."""

    status: MergeStatus
    item: Any = None
    key: Any = None
    evicted: List[Any] = field(default_factory=list)
    error: Optional[MalformedEventError] = None

    @property
    def accepted(self) -> bool:
        return self.status is MergeStatus.ACCEPTED


class BoundedEventList:
    """Newest-first, id-unique list capped at ``capacity`` items.

    Items become known either through the initial snapshot (kept in the
    order the source returned them) or through :meth:`merge`, which
    prepends. Overflow is always evicted from the tail.
    """

    def __init__(
        self,
        capacity: int,
        *,
        id_field: str = "id",
        model: Optional[Type[BaseModel]] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be a positive integer")
        self.capacity = capacity
        self.id_field = id_field
        self.model = model
        self._items: Deque[Any] = deque()
        self._ids: Set[Hashable] = set()

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Iterable[Any],
        capacity: int,
        *,
        id_field: str = "id",
        model: Optional[Type[BaseModel]] = None,
    ) -> "BoundedEventList":
        events = cls(capacity, id_field=id_field, model=model)
        skipped = 0
        for row in snapshot:
            if len(events._items) >= capacity:
                break
            try:
                item, key = events._admit(row)
            except MalformedEventError:
                skipped += 1
                continue
            if key in events._ids:
                continue
            events._items.append(item)
            events._ids.add(key)
        if skipped:
            logger.debug("snapshot: skipped %d malformed rows", skipped)
        return events

    # ------------------------------------------------------------------
    # merging
    # ------------------------------------------------------------------
    def merge(self, event: Any) -> MergeResult:
        """Prepend ``event`` unless it is malformed or its id is known."""
        try:
            item, key = self._admit(event)
        except MalformedEventError as exc:
            logger.debug("skipped event: %s", exc.reason)
            return MergeResult(MergeStatus.MALFORMED, error=exc)
        if key in self._ids:
            return MergeResult(MergeStatus.DUPLICATE, key=key)
        self._items.appendleft(item)
        self._ids.add(key)
        return MergeResult(
            MergeStatus.ACCEPTED, item=item, key=key, evicted=self._enforce_limit()
        )

    def merge_many(self, events: Iterable[Any]) -> List[MergeResult]:
        return [self.merge(e) for e in events]

    def _enforce_limit(self) -> List[Any]:
        evicted: List[Any] = []
        while len(self._items) > self.capacity:
            old = self._items.pop()
            self._ids.discard(self._key_of(old))
            evicted.append(old)
        return evicted

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    @property
    def items(self) -> List[Any]:
        return list(self._items)

    def ids(self) -> List[Hashable]:
        return [self._key_of(item) for item in self._items]

    def get(self, key: Hashable) -> Any:
        for item in self._items:
            if self._key_of(item) == key:
                return item
        return None

    def recent(self, limit: int = 10) -> List[Any]:
        return list(self._items)[: max(limit, 0)]

    def as_dicts(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for item in self._items:
            if isinstance(item, BaseModel):
                out.append(item.model_dump(mode="json"))
            else:
                out.append(dict(item))
        return out

    def clear(self) -> None:
        self._items.clear()
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._items))

    def __contains__(self, key: object) -> bool:
        try:
            return key in self._ids
        except TypeError:
            return False

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def _key_of(self, item: Any) -> Any:
        if isinstance(item, Mapping):
            return item.get(self.id_field)
        return getattr(item, self.id_field, None)

    def _admit(self, event: Any) -> Tuple[Any, Hashable]:
        payload = event.record if isinstance(event, InboundEvent) else event
        if not isinstance(payload, (Mapping, BaseModel)):
            raise MalformedEventError(
                f"payload is not an object ({type(payload).__name__})", payload
            )
        raw_key = self._key_of(payload)
        if raw_key is None or raw_key == "":
            raise MalformedEventError(f"missing {self.id_field!r}", payload)
        item: Any = payload
        if self.model is not None and not isinstance(payload, self.model):
            try:
                item = self.model.model_validate(
                    payload.model_dump() if isinstance(payload, BaseModel) else payload
                )
            except (ValidationError, TypeError, ValueError) as exc:
                raise MalformedEventError(_describe(exc), payload) from exc
        elif isinstance(payload, Mapping):
            item = dict(payload)
        key = self._key_of(item)
        try:
            hash(key)
        except TypeError:
            raise MalformedEventError(f"unhashable {self.id_field!r}", payload) from None
        return item, key


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg')}")
        return "; ".join(parts) or str(exc)
    return str(exc)


def initialize(
    snapshot: Iterable[Any],
    capacity: int,
    *,
    id_field: str = "id",
    model: Optional[Type[BaseModel]] = None,
) -> BoundedEventList:
    return BoundedEventList.from_snapshot(
        snapshot, capacity, id_field=id_field, model=model
    )


def merge(events: BoundedEventList, event: Any) -> BoundedEventList:
    events.merge(event)
    return events


__all__ = [
    "BoundedEventList",
    "MergeResult",
    "MergeStatus",
    "initialize",
    "merge",
]
