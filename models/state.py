from __future__ import annotations
from typing import Optional
from pydantic import BaseModel, Field
import time

class FeedStateModel(BaseModel):
    name: str
    table: str
    capacity: int
    state: str = "unmounted"
    live: bool = False
    loading: bool = False
    snapshot_error: str = ""
    subscription_error: str = ""
    poll_error: str = ""
    item_count: int = 0
    accepted: int = 0
    duplicates: int = 0
    malformed: int = 0
    stale_events: int = 0
    polls: int = 0
    refetches: int = 0
    alerts: int = 0
    mounted_at: Optional[float] = None
    last_event_at: Optional[float] = None
    created: float = Field(default_factory=time.time)

    @property
    def status(self) -> str:
        """Render state: loading, error, empty or ready."""
        if self.snapshot_error:
            return "error"
        if self.loading:
            return "loading"
        return "ready" if self.item_count else "empty"

    @property
    def live_status(self) -> str:
        if self.live:
            return "live"
        if self.subscription_error:
            return "degraded"
        return "offline"
