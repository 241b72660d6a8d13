"""Dashboard widget showing the last few POS sales as they land."""

from __future__ import annotations

from feed_registry import FeedSpec
from models.rows import LiveSale


def _summary(sale: LiveSale) -> str:
    return f"New Sale #{sale.id}: {sale.total_amount:,.2f}"


FEED = FeedSpec(
    name="live_sales",
    table="sales",
    channel="public:sales",
    model=LiveSale,
    capacity=5,
    summary=_summary,
    description="Most recent sales inserted by any POS terminal.",
)
