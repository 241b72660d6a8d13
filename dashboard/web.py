from __future__ import annotations

import asyncio
import json
import contextlib
import logging
from datetime import UTC, datetime
from typing import Any, Optional

from aiohttp import web, WSMsgType

from runtime.errors import FeedError

logger = logging.getLogger("pulseboard.web")


class WebDashboard:
    """Realtime web interface for a :class:`pulseboard.Board`."""

    def __init__(
        self,
        board,
        *,
        host: str = "0.0.0.0",
        port: int = 8000,
        refresh: float = 0.5,
        rows_per_feed: Optional[int] = None,
    ) -> None:
        self.board = board
        self.host = host
        self.port = port
        self.refresh = max(refresh, 0.1)
        self.rows_per_feed = rows_per_feed
        self._app = web.Application()
        self._runner: web.AppRunner | None = None
        self._site: web.BaseSite | None = None
        self._snapshot_task: asyncio.Task[None] | None = None
        self._clients: set[web.WebSocketResponse] = set()
        self._orig_item = None
        self._build_routes()

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        self._orig_item = self.board.on_item
        self.board.on_item = self._handle_item

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        self._snapshot_task = asyncio.create_task(self._snapshot_loop())
        logger.info("web dashboard listening on http://%s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._snapshot_task:
            self._snapshot_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._snapshot_task
            self._snapshot_task = None
        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        if self._orig_item:
            self.board.on_item = self._orig_item

    # ------------------------------------------------------------------
    def _build_routes(self) -> None:
        self._app.router.add_get("/", self._index)
        self._app.router.add_get("/ws", self._websocket_handler)
        self._app.router.add_get("/api/feeds", self._feeds_api)
        self._app.router.add_get("/api/feeds/{name}", self._feed_detail)
        self._app.router.add_post("/api/feeds/{name}/reload", self._reload_feed)

    # ------------------------------------------------------------------
    async def _index(self, request: web.Request) -> web.Response:
        return web.Response(text=self._render_index(), content_type="text/html")

    async def _websocket_handler(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        self._clients.add(ws)
        try:
            await ws.send_json({"type": "snapshot", "payload": self._snapshot()})
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        continue
                    if data.get("type") == "reload" and data.get("feed"):
                        with contextlib.suppress(KeyError):
                            await self.board.reload_feed(str(data["feed"]))
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            self._clients.discard(ws)
            await ws.close()
        return ws

    async def _feeds_api(self, request: web.Request) -> web.Response:
        return web.json_response(self._snapshot())

    def _view_or_404(self, request: web.Request):
        name = request.match_info.get("name", "")
        try:
            return self.board.view(name)
        except KeyError:
            raise web.HTTPNotFound(
                text=json.dumps({"error": f"unknown feed: {name}"}),
                content_type="application/json",
            )

    async def _feed_detail(self, request: web.Request) -> web.Response:
        view = self._view_or_404(request)
        payload = view.snapshot()
        payload["alert_count"] = self.board.alert_counts.get(view.name, 0)
        return web.json_response(payload)

    async def _reload_feed(self, request: web.Request) -> web.Response:
        view = self._view_or_404(request)
        try:
            await self.board.reload_feed(view.name)
        except FeedError as exc:
            raise web.HTTPBadGateway(text=str(exc))
        return web.json_response({"status": "ok", "feed": view.snapshot(limit=0)})

    # ------------------------------------------------------------------
    async def _handle_item(self, feed: str, item: Any, alert: bool) -> None:
        if hasattr(item, "model_dump"):
            row = item.model_dump(mode="json")
        else:
            row = dict(item)
        iso_ts = datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        await self._broadcast(
            {
                "type": "item",
                "payload": {
                    "feed": feed,
                    "alert": alert,
                    "summary": self.board.describe(feed, item),
                    "item": row,
                    "timestamp": iso_ts,
                },
            }
        )
        if self._orig_item:
            await self._orig_item(feed, item, alert)

    def _snapshot(self) -> dict[str, Any]:
        return self.board.snapshot(limit=self.rows_per_feed)

    async def _snapshot_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.refresh)
                await self._broadcast({"type": "snapshot", "payload": self._snapshot()})
        except asyncio.CancelledError:
            pass

    async def _broadcast(self, message: dict[str, Any]) -> None:
        if not self._clients:
            return
        data = json.dumps(message, default=str)
        stale: list[web.WebSocketResponse] = []
        for ws in list(self._clients):
            if ws.closed:
                stale.append(ws)
                continue
            try:
                await ws.send_str(data)
            except (ConnectionResetError, RuntimeError):
                stale.append(ws)
        for ws in stale:
            self._clients.discard(ws)

    # ------------------------------------------------------------------
    def _render_index(self) -> str:
        return """<!DOCTYPE html>
<html lang=\"en\">
<head>
<meta charset=\"utf-8\" />
<title>Pulseboard</title>
<style>
body { margin:0; font-family: 'Inter', system-ui, -apple-system, sans-serif; background:#020617; color:#f3f4f6; display:flex; height:100vh; }
#left { flex:2; display:flex; flex-direction:column; padding:1.5rem; gap:1rem; overflow-y:auto; border-right:1px solid #1f2937; }
#right { width:32%; max-width:420px; padding:1.5rem; background:#111827; overflow-y:auto; }
.feed { background:#0f172a; border:1px solid #1f2937; border-radius:12px; padding:1rem; }
.feed.error { border-color:#ef4444; }
.feed header { display:flex; justify-content:space-between; align-items:center; }
.feed .meta { font-size:0.75rem; color:#9ca3af; }
.feed ul { list-style:none; padding:0; margin:0.5rem 0 0 0; font-size:0.8rem; }
.feed li { padding:0.25rem 0; border-bottom:1px solid #1f2937; white-space:nowrap; overflow:hidden; text-overflow:ellipsis; }
.badge { font-size:0.7rem; padding:0.1rem 0.5rem; border-radius:6px; background:#1f2937; }
.badge.live { background:#065f46; }
.badge.degraded { background:#92400e; }
.note { margin-bottom:0.5rem; font-size:0.85rem; }
.note.alert { color:#f87171; font-weight:600; }
.note .ts { font-size:0.7rem; color:#9ca3af; }
button { padding:0.25rem 0.75rem; border-radius:8px; border:none; background:#3b82f6; color:white; cursor:pointer; }
</style>
</head>
<body>
<div id=\"left\">
  <div style=\"display:flex; justify-content:space-between; align-items:center;\">
    <h1 style=\"margin:0; font-size:1.5rem;\">Pulseboard</h1>
    <span id=\"status\" style=\"font-size:0.85rem; color:#9ca3af;\">connecting...</span>
  </div>
  <div id=\"feeds\"></div>
</div>
<div id=\"right\">
  <h2 style=\"margin-top:0;\">Live events</h2>
  <div id=\"notes\"></div>
</div>
<script>
const feedsEl = document.getElementById('feeds');
const notesEl = document.getElementById('notes');
const statusEl = document.getElementById('status');

function esc(s) {
  const d = document.createElement('div');
  d.textContent = s == null ? '' : String(s);
  return d.innerHTML;
}

function renderFeeds(snapshot) {
  feedsEl.innerHTML = '';
  (snapshot.feeds || []).forEach(feed => {
    const box = document.createElement('div');
    box.className = 'feed' + (feed.status === 'error' ? ' error' : '');
    const err = feed.snapshot_error || feed.subscription_error || feed.poll_error || '';
    const rows = (feed.items || []).slice(0, 10).map(it => `<li>${esc(JSON.stringify(it))}</li>`).join('');
    let body = rows;
    if (feed.status === 'error') body = `<li>Snapshot failed: ${esc(feed.snapshot_error)}</li>` + rows;
    else if (feed.status === 'loading') body = '<li>Loading...</li>';
    else if (feed.status === 'empty') body = '<li>No events yet.</li>';
    box.innerHTML = `<header><strong>${esc(feed.name)}</strong>` +
      `<span><span class=\"badge ${esc(feed.live_status)}\">${esc(feed.live_status)}</span> ` +
      `<button data-feed=\"${esc(feed.name)}\">reload</button></span></header>` +
      `<div class=\"meta\">${feed.item_count}/${feed.capacity} items · accepted ${feed.accepted} · dup ${feed.duplicates} · bad ${feed.malformed} · alerts ${feed.alert_count}${err ? ' · ' + esc(err) : ''}</div>` +
      `<ul>${body}</ul>`;
    feedsEl.appendChild(box);
  });
  feedsEl.querySelectorAll('button[data-feed]').forEach(btn => {
    btn.addEventListener('click', () => fetch(`/api/feeds/${btn.dataset.feed}/reload`, { method: 'POST' }));
  });
}

function appendNote(payload) {
  const el = document.createElement('div');
  el.className = 'note' + (payload.alert ? ' alert' : '');
  el.innerHTML = `<div class=\"ts\">[${esc(payload.timestamp)}] ${esc(payload.feed)}</div><div>${esc(payload.summary)}</div>`;
  notesEl.prepend(el);
  while (notesEl.children.length > 100) notesEl.removeChild(notesEl.lastChild);
}

async function bootstrap() {
  const res = await fetch('/api/feeds');
  renderFeeds(await res.json());
}

function setupSocket() {
  const proto = location.protocol === 'https:' ? 'wss' : 'ws';
  const ws = new WebSocket(`${proto}://${location.host}/ws`);
  ws.addEventListener('open', () => { statusEl.textContent = 'connected'; });
  ws.addEventListener('close', () => {
    statusEl.textContent = 'disconnected';
    setTimeout(setupSocket, 2000);
  });
  ws.addEventListener('message', (event) => {
    try {
      const data = JSON.parse(event.data);
      if (data.type === 'snapshot') {
        renderFeeds(data.payload);
      } else if (data.type === 'item') {
        appendNote(data.payload);
      }
    } catch (err) {
      console.error('bad message', err);
    }
  });
}

bootstrap();
setupSocket();
</script>
</body>
</html>"""
