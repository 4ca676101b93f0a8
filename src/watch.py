"""Streams a card's pane until its window closes (`tukan start --wait`).

Events are plain dicts; StreamPrinter turns them into NDJSON lines or the
human-readable form. The loop checks `abort` once per tick, so a signal is
acted on within one poll interval.
"""
from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import json
import logging

from activity import hash_content
from models import now_ms
from tmux import TmuxError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
INITIAL_DELAY = 0.3

WINDOW_CLOSED = "window_closed"
INTERRUPTED = "interrupted"

Event = Dict[str, Any]


def strip_trailing_blanks(raw: str) -> str:
    lines = raw.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def start_event(card_id: str, window_id: str, name: str, timestamp: int) -> Event:
    return {"type": "start", "cardId": card_id, "windowId": window_id, "name": name, "timestamp": timestamp}


def snapshot_event(content: str, timestamp: int) -> Event:
    return {"type": "snapshot", "content": content, "timestamp": timestamp}


def closed_event(card_id: str, window_id: str, reason: str, timestamp: int) -> Event:
    return {"type": "closed", "cardId": card_id, "windowId": window_id, "exitReason": reason, "timestamp": timestamp}


class StreamPrinter:
    """Callable sink for watch events."""

    def __init__(self, echo: Callable[[str], None], json_mode: bool = False):
        self.echo = echo
        self.json_mode = json_mode
        self._printed_snapshot = False

    def __call__(self, event: Event) -> None:
        if self.json_mode:
            self.echo(json.dumps(event))
            return
        kind = event["type"]
        if kind == "snapshot":
            if self._printed_snapshot:
                self.echo("---")
            self.echo(event["content"])
            self._printed_snapshot = True
        elif kind == "closed" and event["exitReason"] == WINDOW_CLOSED:
            self.echo("--- closed ---")


async def watch_card_pane(
    capture: Callable[[str], Awaitable[str]],
    window_id: str,
    card_id: str,
    name: str,
    emit: Callable[[Event], None],
    abort: Optional[asyncio.Event] = None,
    interval: float = POLL_INTERVAL,
    initial_delay: float = INITIAL_DELAY,
    clock: Callable[[], int] = now_ms,
) -> str:
    """Poll window_id, emitting a snapshot whenever its content changes.

    Returns the exit reason of the closing event.
    """
    abort = abort or asyncio.Event()
    emit(start_event(card_id, window_id, name, clock()))
    await asyncio.sleep(initial_delay)

    prev_hash = ""
    while not abort.is_set():
        try:
            raw = await capture(window_id)
        except TmuxError as exc:
            logger.debug("Window %s gone: %s", window_id, exc)
            emit(closed_event(card_id, window_id, WINDOW_CLOSED, clock()))
            return WINDOW_CLOSED
        digest = hash_content(raw)
        if digest != prev_hash:
            prev_hash = digest
            emit(snapshot_event(strip_trailing_blanks(raw), clock()))
        try:
            await asyncio.wait_for(abort.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    emit(closed_event(card_id, window_id, INTERRUPTED, clock()))
    return INTERRUPTED
