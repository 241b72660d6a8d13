from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import WSMsgType
from pydantic import ValidationError

from models.events import InboundEvent
from runtime.errors import SnapshotFetchError, SubscriptionError

from .base import Backend, EventCallback, StatusCallback, Subscription

logger = logging.getLogger("pulseboard.backends.supabase")

DEFAULT_TIMEOUT = 10
HEARTBEAT_INTERVAL = 25.0
JOIN_TIMEOUT = 10.0
UA = "pulseboard/1.0"


class RealtimeSubscription(Subscription):
    def __init__(self, backend: "SupabaseBackend", topic: str, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._backend = backend
        self.topic = topic
        self.join_ref: Optional[str] = None
        self.joined = False

    def _release(self) -> None:
        self._backend._release(self)


class SupabaseBackend(Backend):
    """PostgREST snapshot reads and Realtime (Phoenix channel) subscriptions.

    Env:
      SUPABASE_URL (required)
      SUPABASE_ANON_KEY (required)
      PULSE_FETCH_TIMEOUT (default: 10 seconds)
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        heartbeat: float = HEARTBEAT_INTERVAL,
        join_timeout: float = JOIN_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ):
        self.url = (url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.api_key = api_key or os.getenv("SUPABASE_ANON_KEY")
        if not self.url or not self.api_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required")
        self.timeout = float(timeout or os.getenv("PULSE_FETCH_TIMEOUT", DEFAULT_TIMEOUT))
        self.heartbeat = heartbeat
        self.join_timeout = join_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._ref = 0
        self._topics: Dict[str, RealtimeSubscription] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._bg: set[asyncio.Task[Any]] = set()

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "User-Agent": UA,
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(trust_env=True)
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    # snapshot reads
    async def fetch_rows(
        self,
        source: str,
        *,
        select: str = "*",
        order_by: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"select": select}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.url}/rest/v1/{source}",
                params=params,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise SnapshotFetchError(
                        source, f"HTTP {resp.status}: {text[:200]}", status=resp.status
                    )
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise SnapshotFetchError(source, str(exc) or exc.__class__.__name__) from exc
        if not isinstance(data, list):
            raise SnapshotFetchError(source, "expected a JSON array of rows")
        return [row for row in data if isinstance(row, dict)]

    # ------------------------------------------------------------------
    # realtime
    def _ws_url(self) -> str:
        base = self.url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/realtime/v1/websocket"

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _ensure_socket(self) -> aiohttp.ClientWebSocketResponse:
        async with self._connect_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            session = await self._get_session()
            try:
                ws = await session.ws_connect(
                    self._ws_url(),
                    params={"apikey": self.api_key or "", "vsn": "1.0.0"},
                    headers=self._headers(),
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise SubscriptionError("realtime", f"connect failed: {exc}") from exc
            self._ws = ws
            self._reader_task = asyncio.create_task(self._reader(ws))
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))
            logger.info("realtime socket connected to %s", self._ws_url())
            return ws

    async def _send(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        topic: str,
        event: str,
        payload: Dict[str, Any],
        ref: Optional[str] = None,
    ) -> None:
        await ws.send_json({"topic": topic, "event": event, "payload": payload, "ref": ref})

    async def subscribe(
        self,
        channel: str,
        table: str,
        callback: EventCallback,
        *,
        event: str = "INSERT",
        schema: str = "public",
        on_status: Optional[StatusCallback] = None,
    ) -> Subscription:
        topic = f"realtime:{channel}"
        ws = await self._ensure_socket()
        current = self._topics.get(topic)
        if current is not None:
            if current.joined:
                raise SubscriptionError(channel, "channel already joined on this socket")
            # a join still waiting for its reply is handed over to this one
            self._supersede(current)
        sub = RealtimeSubscription(
            self,
            topic,
            channel,
            table,
            callback,
            event=event,
            schema=schema,
            on_status=on_status,
        )
        ref = self._next_ref()
        sub.join_ref = ref
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[ref] = fut
        self._topics[topic] = sub
        payload = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [{"event": event, "schema": schema, "table": table}],
            },
            "access_token": self.api_key,
        }
        try:
            await self._send(ws, topic, "phx_join", payload, ref=ref)
            reply = await asyncio.wait_for(fut, timeout=self.join_timeout)
        except asyncio.TimeoutError as exc:
            self._forget(sub)
            raise SubscriptionError(channel, "join timed out") from exc
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            self._forget(sub)
            raise SubscriptionError(channel, f"join failed: {exc}") from exc
        except (SubscriptionError, asyncio.CancelledError):
            self._forget(sub)
            raise
        finally:
            self._pending.pop(ref, None)
        if self._topics.get(topic) is not sub:
            raise SubscriptionError(channel, "join superseded by a newer subscription")
        if reply.get("status") != "ok":
            self._forget(sub)
            raise SubscriptionError(channel, f"join rejected: {reply.get('response')}")
        sub.joined = True
        logger.info("joined %s for %s.%s (%s)", topic, schema, table, event)
        sub.report("SUBSCRIBED")
        return sub

    def _forget(self, sub: RealtimeSubscription) -> None:
        if self._topics.get(sub.topic) is sub:
            del self._topics[sub.topic]

    def _supersede(self, sub: RealtimeSubscription) -> None:
        self._forget(sub)
        fut = self._pending.get(sub.join_ref or "")
        if fut is not None and not fut.done():
            fut.set_exception(
                SubscriptionError(sub.channel, "join superseded by a newer subscription")
            )
        logger.debug("pending join on %s superseded", sub.topic)

    def _release(self, sub: RealtimeSubscription) -> None:
        if self._topics.get(sub.topic) is not sub:
            return
        del self._topics[sub.topic]
        ws = self._ws
        if ws is None or ws.closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._leave(ws, sub.topic))
        self._bg.add(task)
        task.add_done_callback(self._bg.discard)

    async def _leave(self, ws: aiohttp.ClientWebSocketResponse, topic: str) -> None:
        try:
            await self._send(ws, topic, "phx_leave", {}, ref=self._next_ref())
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as exc:
            logger.debug("phx_leave for %s not sent: %s", topic, exc)

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("dropping non-JSON realtime frame")
                        continue
                    if isinstance(frame, dict):
                        self._dispatch(frame)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("realtime socket error: %s", ws.exception())
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._on_socket_closed(ws)

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        payload = frame.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        if event == "phx_reply":
            fut = self._pending.get(str(frame.get("ref")))
            if fut is not None and not fut.done():
                fut.set_result(payload)
            return
        sub = self._topics.get(frame.get("topic") or "")
        if sub is None:
            return
        if event == "postgres_changes":
            inbound = self._to_event(sub, payload.get("data"))
            if inbound is not None and sub.matches(inbound):
                sub.deliver(inbound)
        elif event in ("phx_error", "phx_close") and not self._is_current_join(sub, frame):
            logger.debug("ignoring %s for an earlier join on %s", event, sub.topic)
        elif event == "phx_error":
            logger.warning("channel error on %s", sub.topic)
            sub.report("CHANNEL_ERROR", str(payload.get("reason") or "phx_error"))
        elif event == "phx_close":
            sub.report("CLOSED", "channel closed by server")
        elif event == "system" and payload.get("status") == "error":
            sub.report("CHANNEL_ERROR", str(payload.get("message") or "system error"))

    @staticmethod
    def _is_current_join(sub: RealtimeSubscription, frame: Dict[str, Any]) -> bool:
        ref = frame.get("ref")
        return ref is None or str(ref) == sub.join_ref

    @staticmethod
    def _to_event(sub: RealtimeSubscription, data: Any) -> Optional[InboundEvent]:
        if not isinstance(data, dict):
            logger.debug("postgres_changes frame without data on %s", sub.topic)
            return None
        record = data.get("record")
        old_record = data.get("old_record")
        ts = data.get("commit_timestamp")
        try:
            return InboundEvent(
                table=data.get("table") or sub.table,
                type=str(data.get("type") or data.get("eventType") or "INSERT"),
                schema=data.get("schema") or sub.schema,
                record=record if isinstance(record, dict) else {},
                old_record=old_record if isinstance(old_record, dict) else None,
                commit_timestamp=str(ts) if ts is not None else None,
            )
        except ValidationError as exc:
            logger.warning("unreadable change frame on %s: %s", sub.topic, exc)
            return None

    def _on_socket_closed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(ConnectionResetError("realtime socket closed"))
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        subs = list(self._topics.values())
        self._topics.clear()
        if subs:
            logger.warning("realtime socket closed; %d channel(s) dropped", len(subs))
        for sub in subs:
            sub.report("CLOSED", "realtime socket closed")

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while not ws.closed:
                await asyncio.sleep(self.heartbeat)
                await self._send(ws, "phoenix", "heartbeat", {}, ref=self._next_ref())
        except asyncio.CancelledError:
            pass
        except (ConnectionResetError, aiohttp.ClientError, RuntimeError) as exc:
            logger.warning("realtime heartbeat stopped: %s", exc)

    async def close(self) -> None:
        for sub in list(self._topics.values()):
            sub.unsubscribe()
        if self._bg:
            await asyncio.gather(*list(self._bg), return_exceptions=True)
        ws = self._ws
        if ws is not None:
            self._ws = None
            await ws.close()
        tasks = [t for t in (self._reader_task, self._heartbeat_task) if t is not None]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader_task = None
        self._heartbeat_task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
