"""Marker overlay for the global threat map."""

from __future__ import annotations

from feed_registry import FeedSpec
from models.rows import GeoMarker


def _summary(m: GeoMarker) -> str:
    where = ", ".join(p for p in (m.city, m.country) if p) or "unknown"
    flag = " ANOMALY" if m.is_anomaly else ""
    return f"{where} ({m.latitude:.2f}, {m.longitude:.2f}){flag}"


FEED = FeedSpec(
    name="geo_threats",
    table="system_global_telemetry",
    channel="map_pulse",
    source="view_admin_live_map_markers",
    model=GeoMarker,
    capacity=150,
    refetch_on_event=True,
    alert=lambda m: m.is_anomaly,
    summary=_summary,
    description="Map markers re-read on every telemetry insert; rows without usable coordinates are dropped.",
)
