"""System-wide telemetry stream for the admin command center."""

from __future__ import annotations

from feed_registry import FeedSpec
from models.rows import TelemetryEvent


def _summary(evt: TelemetryEvent) -> str:
    path = evt.metadata.get("path") or "Root"
    return f"[{evt.event_category}] {evt.event_name or 'event'} {path}"


FEED = FeedSpec(
    name="telemetry_pulse",
    table="system_global_telemetry",
    channel="system_wide_pulse",
    model=TelemetryEvent,
    capacity=100,
    alert=lambda evt: evt.severity == "CRITICAL",
    summary=_summary,
    description="Every tracked visit and action across tenants.",
)
