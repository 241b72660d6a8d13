import asyncio
import contextlib
import json
import socket

import pytest
from aiohttp import WSMsgType, web

from backends import get_backend
from backends.supabase import SupabaseBackend
from runtime.errors import SnapshotFetchError, SubscriptionError
from runtime.feed_view import FeedView, ViewState


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _until(predicate, attempts: int = 200) -> bool:
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class FakeSupabase:
    """PostgREST and Realtime stand-in that records what clients send."""

    def __init__(self):
        self.rows = {
            "sales": [
                {"id": 2, "total_amount": 20},
                {"id": 1, "total_amount": 10},
            ]
        }
        self.requests = []
        self.frames = []
        self.sockets = []
        self.rejected_topics = set()
        self.held_joins = 0
        self.join_gate = asyncio.Event()
        self.tasks = []
        self.app = web.Application()
        self.app.router.add_get("/rest/v1/{source}", self._rest)
        self.app.router.add_get("/realtime/v1/websocket", self._realtime)

    async def _rest(self, request: web.Request) -> web.Response:
        source = request.match_info["source"]
        self.requests.append((source, dict(request.query), request.headers.copy()))
        if source == "broken":
            return web.json_response({"message": "relation does not exist"}, status=404)
        if source == "not_a_list":
            return web.json_response({"rows": []})
        return web.json_response(self.rows.get(source, []))

    async def _realtime(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            frame = json.loads(msg.data)
            self.frames.append(frame)
            if frame["event"] == "phx_join":
                ok = frame["topic"] not in self.rejected_topics
                reply = {
                    "topic": frame["topic"],
                    "event": "phx_reply",
                    "payload": {
                        "status": "ok" if ok else "error",
                        "response": {} if ok else {"reason": "unauthorized"},
                    },
                    "ref": frame["ref"],
                }
                if self.held_joins:
                    self.held_joins -= 1
                    self.tasks.append(asyncio.create_task(self._reply_later(ws, reply)))
                else:
                    await ws.send_json(reply)
        return ws

    async def _reply_later(self, ws: web.WebSocketResponse, reply: dict) -> None:
        await self.join_gate.wait()
        if not ws.closed:
            await ws.send_json(reply)

    async def push(self, topic: str, event: str, payload: dict) -> None:
        for ws in self.sockets:
            if not ws.closed:
                await ws.send_json({"topic": topic, "event": event, "payload": payload, "ref": None})

    def events(self, name: str) -> list:
        return [f for f in self.frames if f["event"] == name]


@contextlib.asynccontextmanager
async def running_fake(**backend_kwargs):
    server = FakeSupabase()
    runner = web.AppRunner(server.app)
    await runner.setup()
    port = _unused_port()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    backend = SupabaseBackend(f"http://127.0.0.1:{port}", "anon-key", **backend_kwargs)
    try:
        yield server, backend
    finally:
        await backend.close()
        for task in server.tasks:
            task.cancel()
        await asyncio.gather(*server.tasks, return_exceptions=True)
        await runner.cleanup()


def _change(record: dict, kind: str = "INSERT") -> dict:
    return {
        "data": {
            "table": "sales",
            "schema": "public",
            "type": kind,
            "record": record,
            "commit_timestamp": "2024-05-01T10:00:00Z",
        },
        "ids": [1],
    }


@pytest.mark.asyncio
async def test_fetch_rows_builds_postgrest_query():
    async with running_fake() as (server, backend):
        rows = await backend.fetch_rows(
            "sales", order_by="created_at", limit=5, filters={"tenant_id": "t1"}
        )
        assert [r["id"] for r in rows] == [2, 1]
        source, query, headers = server.requests[0]
        assert source == "sales"
        assert query == {
            "select": "*",
            "order": "created_at.desc",
            "limit": "5",
            "tenant_id": "eq.t1",
        }
        assert headers["apikey"] == "anon-key"
        assert headers["Authorization"] == "Bearer anon-key"


@pytest.mark.asyncio
async def test_fetch_rows_errors_are_typed():
    async with running_fake() as (server, backend):
        with pytest.raises(SnapshotFetchError) as excinfo:
            await backend.fetch_rows("broken")
        assert excinfo.value.status == 404
        assert excinfo.value.source == "broken"

        with pytest.raises(SnapshotFetchError):
            await backend.fetch_rows("not_a_list")


@pytest.mark.asyncio
async def test_subscribe_joins_and_delivers_matching_changes():
    async with running_fake(heartbeat=60) as (server, backend):
        received = []
        statuses = []
        sub = await backend.subscribe(
            "public:sales",
            "sales",
            received.append,
            on_status=lambda status, error: statuses.append(status),
        )
        assert statuses == ["SUBSCRIBED"]
        join = server.events("phx_join")[0]
        assert join["topic"] == "realtime:public:sales"
        assert join["payload"]["config"]["postgres_changes"] == [
            {"event": "INSERT", "schema": "public", "table": "sales"}
        ]

        await server.push("realtime:public:sales", "postgres_changes", _change({"id": 9}, "UPDATE"))
        await server.push("realtime:public:sales", "postgres_changes", _change({"id": 10, "total_amount": 1}))
        assert await _until(lambda: received)
        assert len(received) == 1
        assert received[0].record == {"id": 10, "total_amount": 1}
        assert received[0].commit_timestamp == "2024-05-01T10:00:00Z"

        sub.unsubscribe()
        sub.unsubscribe()
        assert await _until(lambda: server.events("phx_leave"))
        assert len(server.events("phx_leave")) == 1
        assert server.events("phx_leave")[0]["topic"] == "realtime:public:sales"

        await server.push("realtime:public:sales", "postgres_changes", _change({"id": 11}))
        await asyncio.sleep(0.05)
        assert len(received) == 1


@pytest.mark.asyncio
async def test_rejected_join_raises():
    async with running_fake() as (server, backend):
        server.rejected_topics.add("realtime:secret")
        with pytest.raises(SubscriptionError) as excinfo:
            await backend.subscribe("secret", "sales", lambda e: None)
        assert "rejected" in str(excinfo.value)


@pytest.mark.asyncio
async def test_channel_errors_and_socket_loss_are_reported():
    async with running_fake() as (server, backend):
        statuses = []
        await backend.subscribe(
            "public:sales",
            "sales",
            lambda e: None,
            on_status=lambda status, error: statuses.append((status, error)),
        )
        await server.push("realtime:public:sales", "phx_error", {"reason": "db went away"})
        assert await _until(lambda: len(statuses) == 2)
        assert statuses[1] == ("CHANNEL_ERROR", "db went away")

        await server.sockets[0].close()
        assert await _until(lambda: len(statuses) == 3)
        assert statuses[2][0] == "CLOSED"


@pytest.mark.asyncio
async def test_heartbeat_is_sent():
    async with running_fake(heartbeat=0.02) as (server, backend):
        await backend.subscribe("public:sales", "sales", lambda e: None)
        assert await _until(lambda: server.events("heartbeat"))
        assert server.events("heartbeat")[0]["topic"] == "phoenix"


def test_missing_credentials(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    with pytest.raises(RuntimeError):
        SupabaseBackend()
    with pytest.raises(ValueError):
        get_backend("carrier-pigeon")


@pytest.mark.asyncio
async def test_newer_join_replaces_one_still_waiting_for_its_reply():
    async with running_fake() as (server, backend):
        server.held_joins = 1
        received = []
        first = asyncio.create_task(backend.subscribe("public:sales", "sales", lambda e: None))
        assert await _until(lambda: len(server.events("phx_join")) == 1)

        second = await backend.subscribe("public:sales", "sales", received.append)
        with pytest.raises(SubscriptionError) as excinfo:
            await first
        assert "superseded" in str(excinfo.value)

        server.join_gate.set()
        await server.push("realtime:public:sales", "postgres_changes", _change({"id": 3}))
        assert await _until(lambda: received)
        assert not second.closed
        assert server.events("phx_leave") == []


@pytest.mark.asyncio
async def test_reload_during_pending_join_stays_live(sales_spec):
    async with running_fake() as (server, backend):
        server.held_joins = 1
        view = FeedView(sales_spec, backend)
        mounting = asyncio.create_task(view.mount())
        assert await _until(lambda: len(server.events("phx_join")) == 1)

        reloading = asyncio.create_task(view.reload())
        assert await _until(lambda: len(server.events("phx_join")) == 2)
        server.join_gate.set()
        await mounting
        await reloading

        snap = view.snapshot()
        assert view.lifecycle is ViewState.SUBSCRIBED
        assert snap["live_status"] == "live"
        assert snap["subscription_error"] == ""
        assert [item.id for item in view.items] == [2, 1]

        await server.push(
            "realtime:test:sales",
            "postgres_changes",
            _change({"id": 7, "total_amount": 70}),
        )
        assert await _until(lambda: 7 in view.events)
        assert server.events("phx_leave") == []

        await view.unmount()
        assert await _until(lambda: len(server.events("phx_leave")) == 1)


@pytest.mark.asyncio
async def test_error_frames_for_an_earlier_join_are_ignored():
    async with running_fake() as (server, backend):
        statuses = []
        sub = await backend.subscribe(
            "public:sales",
            "sales",
            lambda e: None,
            on_status=lambda status, error: statuses.append(status),
        )
        stale_ref = str(int(sub.join_ref) + 100)
        for ws in server.sockets:
            await ws.send_json(
                {"topic": "realtime:public:sales", "event": "phx_close", "payload": {}, "ref": stale_ref}
            )
        await server.push("realtime:public:sales", "phx_error", {"reason": "boom"})
        assert await _until(lambda: len(statuses) == 2)
        assert statuses == ["SUBSCRIBED", "CHANNEL_ERROR"]
