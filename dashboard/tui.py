from __future__ import annotations

import asyncio
import shutil
import sys
from runtime.errors import FeedError
from .state import DashboardState
from .events import pump_events

CLEAR = "\x1b[2J\x1b[H"


def fmt_row(cols, widths):
    out = []
    for c, w in zip(cols, widths):
        s = (c if c is not None else "")[:w].ljust(w)
        out.append(s)
    return " ".join(out)


def fmt_item(item: dict) -> str:
    parts = [f"{k}={v}" for k, v in item.items() if v not in (None, "", {}, [])]
    return " ".join(parts)


async def handle_command(board, dbstate: DashboardState, msg: str) -> None:
    if msg == "/quit":
        raise KeyboardInterrupt
    cmd, _, arg = msg.partition(" ")
    name = arg.strip()
    if cmd == "/reload" and name:
        try:
            await board.reload_feed(name)
            dbstate.add_message(f"[sys] reloaded {name}")
        except KeyError:
            dbstate.add_message(f"[sys] feed not open: {name}")
    elif cmd == "/close" and name:
        closed = await board.close_feed(name)
        dbstate.add_message(f"[sys] {'closed' if closed else 'not open:'} {name}")
    elif cmd == "/open" and name:
        try:
            await board.open_feed(name)
            dbstate.add_message(f"[sys] opened {name}")
        except FeedError as e:
            dbstate.add_message(f"[sys] cannot open {name}: {e}")
    else:
        dbstate.add_message(f"[sys] unknown command: {msg}")


async def input_loop(board, dbstate: DashboardState):
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    while True:
        line = await reader.readline()
        if not line:
            await asyncio.sleep(0.1)
            continue
        msg = line.decode(errors="replace").strip()
        if not msg:
            continue
        if msg.startswith("/"):
            await handle_command(board, dbstate, msg)
        else:
            dbstate.add_message("[sys] commands: /open <feed>, /reload <feed>, /close <feed>, /quit")


async def draw_loop(board, dbstate: DashboardState, refresh: float = 0.5):
    while True:
        cols = shutil.get_terminal_size((120, 40)).columns
        print(CLEAR, end="")
        print("Pulseboard - Ctrl+C to exit".ljust(cols))
        print("-" * cols)
        headers = ["feed", "status", "live", "items", "accepted", "dup", "bad", "alerts", "error"]
        widths = [16, 8, 8, 5, 8, 5, 5, 6, 40]
        print(fmt_row(headers, widths))
        print("-" * cols)
        for f in dbstate.feeds:
            err = f.get("snapshot_error") or f.get("subscription_error") or f.get("poll_error") or ""
            row = [
                f.get("name", ""),
                f.get("status", ""),
                f.get("live_status", ""),
                str(f.get("item_count", 0)),
                str(f.get("accepted", 0)),
                str(f.get("duplicates", 0)),
                str(f.get("malformed", 0)),
                str(f.get("alert_count", 0)),
                err[:40],
            ]
            print(fmt_row(row, widths))
        print("-" * cols)
        for f in dbstate.feeds:
            print(f"{f.get('name')}:")
            for item in f.get("items", [])[:5]:
                print(f"   {fmt_item(item)}"[:cols])
        print("-" * cols)
        print("Notifications:")
        for line in dbstate.notifications[-8:]:
            print(f" {line}"[:cols])
        print("-" * cols)
        print("Commands: /open <feed>, /reload <feed>, /close <feed>, /quit")
        for line in dbstate.messages[-3:]:
            print(f" {line}"[:cols])
        sys.stdout.flush()
        await asyncio.sleep(refresh)


async def run_tui(board, refresh: float = 0.5):
    dbstate = DashboardState()
    prev_listener = board.on_item

    async def item_handler(feed, item, alert):
        mark = "!" if alert else "+"
        dbstate.add_notification(f"[{mark} {feed}] {board.describe(feed, item)}")
        await prev_listener(feed, item, alert)

    board.on_item = item_handler

    tasks = [
        asyncio.create_task(draw_loop(board, dbstate, refresh)),
        asyncio.create_task(input_loop(board, dbstate)),
        asyncio.create_task(pump_events(board, dbstate, refresh)),
    ]
    try:
        await asyncio.gather(*tasks)
    except KeyboardInterrupt:
        pass
    finally:
        for t in tasks:
            t.cancel()
        board.on_item = prev_listener
