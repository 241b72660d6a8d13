from __future__ import annotations

import itertools
import random

import pytest

from models.events import InboundEvent
from models.rows import GeoMarker, LiveSale
from runtime.errors import MalformedEventError
from runtime.event_list import BoundedEventList, MergeStatus, initialize, merge


def _ids(events: BoundedEventList) -> list:
    return [item["id"] for item in events.items]


def test_initialize_keeps_snapshot_order():
    events = initialize([{"id": 1}, {"id": 2}, {"id": 3}], 5)
    assert events.items == [{"id": 1}, {"id": 2}, {"id": 3}]


def test_initialize_truncates_tail_and_handles_empty():
    assert _ids(initialize([{"id": i} for i in range(10)], 4)) == [0, 1, 2, 3]
    assert initialize([], 3).items == []


def test_initialize_drops_malformed_and_duplicate_rows():
    events = initialize([{"id": 1}, {"name": "no id"}, {"id": 1}, {"id": 2}], 5)
    assert _ids(events) == [1, 2]


def test_merge_prepends_new_event():
    events = initialize([{"id": 1}, {"id": 2}, {"id": 3}], 5)
    merge(events, {"id": 4})
    assert events.items == [{"id": 4}, {"id": 1}, {"id": 2}, {"id": 3}]


def test_duplicate_is_not_added_or_moved():
    events = initialize([{"id": 1}, {"id": 2}, {"id": 3}], 5)
    merge(events, {"id": 4})
    result = events.merge({"id": 2})
    assert result.status is MergeStatus.DUPLICATE
    assert _ids(events) == [4, 1, 2, 3]


def test_first_accepted_copy_wins():
    events = BoundedEventList(5)
    events.merge({"id": 7, "v": "first"})
    events.merge({"id": 7, "v": "second"})
    assert events.items == [{"id": 7, "v": "first"}]


def test_overflow_evicts_oldest():
    events = initialize([{"id": 1}, {"id": 2}, {"id": 3}], 3)
    merge(events, {"id": 4})
    result = events.merge({"id": 5})
    assert _ids(events) == [5, 4, 1]
    assert result.evicted == [{"id": 2}]


def test_evicted_id_can_return():
    events = initialize([{"id": 1}, {"id": 2}], 2)
    events.merge({"id": 3})
    assert 2 not in events
    assert events.merge({"id": 2}).accepted
    assert _ids(events) == [2, 3]


def test_merge_is_idempotent():
    once = initialize([{"id": 1}], 3)
    twice = initialize([{"id": 1}], 3)
    merge(once, {"id": 9})
    merge(twice, {"id": 9})
    merge(twice, {"id": 9})
    assert once.items == twice.items


def test_bound_and_uniqueness_hold_for_random_streams():
    rng = random.Random(42)
    events = BoundedEventList(7)
    for _ in range(500):
        events.merge({"id": rng.randint(0, 30)})
        ids = events.ids()
        assert len(ids) <= 7
        assert len(set(ids)) == len(ids)


def test_retained_ids_do_not_depend_on_interleaving():
    batch = [{"id": i} for i in range(4)]
    seen = set()
    for order in itertools.permutations(batch):
        events = BoundedEventList(10)
        for e in order:
            events.merge(e)
        seen.add(frozenset(events.ids()))
    assert seen == {frozenset(range(4))}


@pytest.mark.parametrize("payload", [{}, {"id": None}, {"id": ""}, {"id": ["x"]}, "not a row"])
def test_missing_or_bad_id_is_dropped(payload):
    events = BoundedEventList(3)
    result = events.merge(payload)
    assert result.status is MergeStatus.MALFORMED
    assert isinstance(result.error, MalformedEventError)
    assert len(events) == 0


def test_non_numeric_coordinate_is_dropped_without_raising():
    events = initialize(
        [{"id": 1, "latitude": 1.0, "longitude": 2.0}], 5, model=GeoMarker
    )
    result = events.merge({"id": 2, "latitude": "not-a-number", "longitude": 10})
    assert result.status is MergeStatus.MALFORMED
    assert "latitude" in result.error.reason
    assert events.ids() == [1]


def test_numeric_strings_are_coerced():
    events = BoundedEventList(5, model=GeoMarker)
    result = events.merge({"id": 3, "latitude": "-1.29", "longitude": "36.82"})
    assert result.accepted
    assert result.item.latitude == pytest.approx(-1.29)


@pytest.mark.parametrize(
    "row",
    [
        {"id": 1, "latitude": 91, "longitude": 0},
        {"id": 1, "latitude": 0, "longitude": -181},
        {"id": 1, "latitude": "nan", "longitude": 0},
        {"id": 1, "longitude": 0},
    ],
)
def test_out_of_range_or_missing_numbers_are_rejected(row):
    events = BoundedEventList(5, model=GeoMarker)
    assert events.merge(row).status is MergeStatus.MALFORMED


def test_inbound_event_unwraps_record():
    events = BoundedEventList(5, model=LiveSale)
    event = InboundEvent(table="sales", record={"id": 10, "total_amount": "19.90"})
    result = events.merge(event)
    assert result.accepted
    assert events.as_dicts()[0]["total_amount"] == pytest.approx(19.9)


def test_custom_id_field():
    events = BoundedEventList(2, id_field="uuid")
    events.merge({"uuid": "a", "id": 1})
    events.merge({"uuid": "b", "id": 1})
    assert events.ids() == ["b", "a"]
    assert events.get("a") == {"uuid": "a", "id": 1}


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        BoundedEventList(0)
