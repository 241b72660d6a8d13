import socket

import aiohttp
import pytest

from dashboard.web import WebDashboard
from feed_registry import FeedRegistry
from pulseboard import Board


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_web_dashboard_serves_feeds_and_reload(backend, sales_spec):
    backend.tables["sales"] = [{"id": 1, "total_amount": 12.5}]
    reg = FeedRegistry()
    reg.register(sales_spec)
    board = Board(backend, feed_registry=reg, poll_fallback=False)
    await board.start()

    port = _unused_port()
    dash = WebDashboard(board, host="127.0.0.1", port=port, refresh=0.1)
    await dash.start()
    base = f"http://127.0.0.1:{port}"

    try:
        async with aiohttp.ClientSession() as session:
            resp = await session.get(f"{base}/")
            assert resp.status == 200
            assert "Pulseboard" in await resp.text()

            resp = await session.get(f"{base}/api/feeds")
            data = await resp.json()
            assert [f["name"] for f in data["feeds"]] == ["test_sales"]
            assert data["feeds"][0]["items"] == [
                {"id": 1, "total_amount": 12.5, "customer_name": None, "payment_method": None, "created_at": None}
            ]

            resp = await session.get(f"{base}/api/feeds/test_sales")
            detail = await resp.json()
            assert detail["status"] == "ready"
            assert detail["live_status"] == "live"
            assert detail["alert_count"] == 0

            missing = await session.get(f"{base}/api/feeds/nope")
            assert missing.status == 404
            assert (await missing.json())["error"] == "unknown feed: nope"

            calls = backend.fetch_calls
            resp = await session.post(f"{base}/api/feeds/test_sales/reload")
            body = await resp.json()
            assert body["status"] == "ok"
            assert body["feed"]["items"] == []
            assert backend.fetch_calls == calls + 1
            assert len(backend.active_subscriptions) == 1
    finally:
        await dash.stop()
        await board.shutdown()


@pytest.mark.asyncio
async def test_websocket_streams_snapshot_and_items(backend, sales_spec):
    reg = FeedRegistry()
    reg.register(sales_spec)
    board = Board(backend, feed_registry=reg, poll_fallback=False)
    await board.start()

    port = _unused_port()
    dash = WebDashboard(board, host="127.0.0.1", port=port, refresh=0.1)
    await dash.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(f"http://127.0.0.1:{port}/ws") as ws:
                first = await ws.receive_json(timeout=2)
                assert first["type"] == "snapshot"
                assert first["payload"]["feeds"][0]["name"] == "test_sales"

                backend.insert("sales", {"id": 5, "total_amount": 2000})
                item = None
                for _ in range(50):
                    msg = await ws.receive_json(timeout=2)
                    if msg["type"] == "item":
                        item = msg["payload"]
                        break
                assert item is not None
                assert item["feed"] == "test_sales"
                assert item["alert"] is True
                assert item["item"]["id"] == 5
                assert item["timestamp"].endswith("Z")
    finally:
        await dash.stop()
        await board.shutdown()
