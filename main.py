from __future__ import annotations

import argparse
import asyncio
import contextlib
import itertools
import logging
import os
import random
import sys
from datetime import UTC, datetime

try:
    from dotenv import load_dotenv  # type: ignore

    load_dotenv()
except ImportError:
    pass

from backends import InMemoryBackend, get_backend
from pulseboard import Board

logger = logging.getLogger("pulseboard")


async def printer(feed: str, item, alert: bool, *, board: Board):
    mark = "ALERT " if alert else ""
    print(f"[{feed}] {mark}{board.describe(feed, item)}", flush=True)


def parse_capacities(values: list[str]) -> dict[str, int]:
    out: dict[str, int] = {}
    for raw in values:
        name, sep, num = raw.partition("=")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"expected feed=N, got {raw!r}")
        try:
            capacity = int(num)
        except ValueError:
            raise argparse.ArgumentTypeError(f"capacity must be an integer: {raw!r}") from None
        if capacity <= 0:
            raise argparse.ArgumentTypeError(f"capacity must be positive: {raw!r}")
        out[name.strip()] = capacity
    return out


async def demo_inserts(backend: InMemoryBackend, interval: float = 1.0):
    """Feed the in-memory backend with synthetic rows, including some bad ones."""
    ids = itertools.count(1)
    cities = [("Nairobi", "KE", -1.29, 36.82), ("Lagos", "NG", 6.52, 3.38), ("Berlin", "DE", 52.52, 13.4)]
    while True:
        await asyncio.sleep(interval)
        now = datetime.now(UTC).isoformat()
        n = next(ids)
        backend.insert(
            "sales",
            {"id": n, "total_amount": round(random.uniform(5, 500), 2), "created_at": now},
        )
        city, country, lat, lng = random.choice(cities)
        telemetry = {
            "id": n,
            "event_name": "page_view",
            "event_category": "traffic",
            "severity": "CRITICAL" if n % 17 == 0 else "INFO",
            "metadata": {"path": random.choice(["/pos", "/invoicing", "/sacco/loans"])},
            "city": city,
            "country": country,
            "latitude": lat if n % 11 else "not-a-number",
            "longitude": lng,
            "is_anomaly": n % 13 == 0,
            "created_at": now,
        }
        if n % 11:
            # the marker view is derived from telemetry; store it before the insert is published
            backend.tables.setdefault("view_admin_live_map_markers", []).append(
                {
                    "id": n,
                    "latitude": lat,
                    "longitude": lng,
                    "city": city,
                    "country": country,
                    "is_anomaly": telemetry["is_anomaly"],
                    "created_at": now,
                }
            )
        backend.insert("system_global_telemetry", telemetry)
        if n % 5 == 0:
            backend.insert(
                "audit_anomalies",
                {
                    "id": n,
                    "description": "journal posted outside business hours",
                    "risk_score": random.randint(40, 99),
                    "detected_at": now,
                },
            )
        if n % 7 == 0:
            backend.insert(
                "system_tactical_comms",
                {"id": n, "priority": random.choice(["NORMAL", "URGENT"]), "body": "ledger lock requested", "created_at": now},
            )


async def run(
    backend_name: str,
    feeds: list[str] | None,
    ui: str,
    *,
    poll_interval: float | None,
    poll_fallback: bool,
    capacities: dict[str, int],
    demo: bool,
    refresh: float,
    web_host: str,
    web_port: int,
):
    backend = get_backend(backend_name)
    board = Board(
        backend,
        poll_interval=poll_interval,
        poll_fallback=poll_fallback,
        capacities=capacities,
    )

    async def on_item(feed, item, alert):
        await printer(feed, item, alert, board=board)

    if ui == "none":
        board.on_item = on_item

    web_dash = None
    demo_task: asyncio.Task[None] | None = None
    try:
        opened = await board.start(feeds)
        logger.info("feeds open: %s", ", ".join(opened))
        if demo:
            if not isinstance(backend, InMemoryBackend):
                logger.warning("--demo only applies to the memory backend; ignoring")
            else:
                demo_task = asyncio.create_task(demo_inserts(backend))
        if ui == "web" and os.getenv("DASH_ENABLED", "true").lower() == "true":
            from dashboard.web import WebDashboard

            web_dash = WebDashboard(board, host=web_host, port=web_port, refresh=refresh)
            await web_dash.start()
            stopper = asyncio.Event()
            try:
                await stopper.wait()
            except asyncio.CancelledError:
                pass
        elif ui == "tui" and os.getenv("DASH_ENABLED", "true").lower() == "true":
            from dashboard.tui import run_tui

            await run_tui(board, refresh=refresh)
        else:
            stopper = asyncio.Event()
            try:
                await stopper.wait()
            except asyncio.CancelledError:
                pass
    except asyncio.CancelledError:
        pass
    finally:
        if demo_task:
            demo_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await demo_task
        if web_dash:
            await web_dash.stop()
        await board.shutdown()
        await backend.close()


def main(argv: list[str] | None = None):
    default_backend = os.getenv("PULSE_BACKEND", "memory")
    default_feeds = os.getenv("PULSE_FEEDS", "")
    default_ui = os.getenv("PULSE_UI", "tui")
    default_poll = os.getenv("PULSE_POLL_INTERVAL")
    default_fallback = os.getenv("PULSE_POLL_FALLBACK", "true").lower() == "true"
    default_refresh = float(os.getenv("DASH_REFRESH", "0.5"))
    default_host = os.getenv("PULSE_WEB_HOST", "0.0.0.0")
    default_port = int(os.getenv("PULSE_WEB_PORT", "8000"))
    default_level = os.getenv("LOG_LEVEL", "INFO")
    p = argparse.ArgumentParser(description="Pulseboard realtime feeds")
    p.add_argument(
        "--backend",
        default=default_backend,
        help="Event source to use (memory, supabase).",
    )
    p.add_argument(
        "--feeds",
        default=default_feeds,
        help="Comma-separated feed names (default: all registered feeds).",
    )
    p.add_argument(
        "--ui",
        choices=["tui", "web", "none"],
        default=default_ui,
        help="Dashboard mode to launch (tui, web, none).",
    )
    p.add_argument("--no-dash", action="store_true", help="Run headless (no dashboard).")
    p.add_argument(
        "--poll-interval",
        type=float,
        default=float(default_poll) if default_poll else None,
        help="Re-fetch each feed every N seconds and merge the result.",
    )
    p.add_argument(
        "--poll-fallback",
        action=argparse.BooleanOptionalAction,
        default=default_fallback,
        help="Only poll while live updates are unavailable.",
    )
    p.add_argument(
        "--capacity",
        action="append",
        default=[],
        metavar="FEED=N",
        help="Override a feed's capacity (repeatable).",
    )
    p.add_argument("--demo", action="store_true", help="Insert synthetic rows (memory backend).")
    p.add_argument(
        "--ui-refresh",
        type=float,
        default=default_refresh,
        help="Refresh interval for dashboards (seconds).",
    )
    p.add_argument("--web-host", default=default_host, help="Host interface for the web UI.")
    p.add_argument("--web-port", type=int, default=default_port, help="Port for the web UI.")
    p.add_argument("--log-level", default=default_level, help="Logging level (DEBUG, INFO, ...).")
    args = p.parse_args(argv)
    try:
        capacities = parse_capacities(args.capacity)
    except argparse.ArgumentTypeError as exc:
        p.error(str(exc))

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    feeds = [f.strip() for f in args.feeds.split(",") if f.strip()] or None
    ui_mode = args.ui
    if args.no_dash:
        ui_mode = "none"
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(
            run(
                args.backend,
                feeds,
                ui=ui_mode,
                poll_interval=args.poll_interval,
                poll_fallback=args.poll_fallback,
                capacities=capacities,
                demo=args.demo,
                refresh=args.ui_refresh,
                web_host=args.web_host,
                web_port=args.web_port,
            )
        )


if __name__ == "__main__":
    main()
