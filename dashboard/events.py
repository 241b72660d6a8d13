from __future__ import annotations
import asyncio

async def pump_events(board, dbstate, refresh_interval: float = 0.5, rows_per_feed: int = 5):
    """
    Purpose: Drive dashboard state from the board.
    Polls the board snapshot periodically and updates the UI state.
    """
    while True:
        dbstate.set_snapshot(board.snapshot(limit=rows_per_feed))
        await asyncio.sleep(refresh_interval)
