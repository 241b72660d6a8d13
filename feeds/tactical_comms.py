"""Operator notifications; URGENT ones raise an alert."""

from __future__ import annotations

from feed_registry import FeedSpec
from models.rows import TacticalComm

FEED = FeedSpec(
    name="tactical_comms",
    table="system_tactical_comms",
    channel="tactical_comms_monitor",
    model=TacticalComm,
    capacity=50,
    alert=lambda c: c.priority == "URGENT",
    summary=lambda c: f"[{c.priority}] {c.subject or c.body}",
)
