"""Board derivation: merges the live tmux tree with the card store.

Ordering contract for derive(): columns come out in configured order; inside
a column, live windows come first in tmux enumeration order, followed by
cards without a live window in store order. Nothing is re-sorted.
"""
from __future__ import annotations
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Set

from models import (
    ActivityEntry, BoardCard, BoardColumn, BoardConfig, Card, TmuxServer, TmuxWindow,
    COL_UNASSIGNED, now_ms,
)


def live_window_ids(server: TmuxServer) -> Set[str]:
    return {window.id for _, window in server.windows()}


def pane_window_map(server: TmuxServer) -> Dict[str, str]:
    return {pane.id: window.id for _, window in server.windows() for pane in window.panes}


def self_window_id(server: TmuxServer, pane_id: Optional[str]) -> Optional[str]:
    """Window hosting pane_id (the pane tukan itself runs in), if any."""
    if not pane_id:
        return None
    for _, window in server.windows():
        if any(p.id == pane_id for p in window.panes):
            return window.id
    return None


def reconcile(config: BoardConfig, live_ids: Iterable[str], now: Optional[int] = None) -> BoardConfig:
    """Sync closed_at with window liveness.

    A linked card whose window disappeared gets closed_at (once); a card whose
    window is back loses it. Returns config itself when nothing changed.
    """
    live = set(live_ids)
    ts = now if now is not None else now_ms()
    updated: Optional[Dict[str, Card]] = None
    for card_id, card in config.cards.items():
        if not card.window_id:
            continue
        if card.window_id in live:
            if card.closed_at is None:
                continue
            new_card = replace(card, closed_at=None)
        else:
            if card.closed_at is not None:
                continue
            new_card = replace(card, closed_at=ts)
        if updated is None:
            updated = dict(config.cards)
        updated[card_id] = new_card
    if updated is None:
        return config
    return replace(config, cards=updated)


def _idle_seconds(entry: Optional[ActivityEntry], now: int) -> Optional[int]:
    if entry is None:
        return None
    return max(0, (now - entry.last_change_time) // 1000)


def _first_pane_fields(window: TmuxWindow):
    if not window.panes:
        return "", ""
    pane = window.panes[0]
    return pane.command, pane.working_dir


def derive(
    server: TmuxServer,
    config: BoardConfig,
    self_pane_id: Optional[str] = None,
    activity: Optional[Mapping[str, ActivityEntry]] = None,
    previews: Optional[Mapping[str, List[str]]] = None,
    now: Optional[int] = None,
) -> List[BoardColumn]:
    activity = activity or {}
    previews = previews or {}
    ts = now if now is not None else now_ms()

    by_window: Dict[str, Card] = {}
    for card in config.cards.values():
        if card.window_id:
            by_window[card.window_id] = card

    skip = self_window_id(server, self_pane_id)
    produced: List[BoardCard] = []
    matched: Set[str] = set()

    for session, window in server.windows():
        if window.id == skip:
            if window.id in by_window:
                matched.add(by_window[window.id].id)
            continue
        pane_command, pane_dir = _first_pane_fields(window)
        entry = activity.get(window.id)
        signals = dict(
            active=window.active,
            has_activity=entry.has_activity if entry else False,
            spinning=entry.spinning if entry else False,
            idle_time=_idle_seconds(entry, ts),
            preview=previews.get(window.id),
        )
        card = by_window.get(window.id)
        if card is not None:
            matched.add(card.id)
            produced.append(BoardCard(
                card_id=card.id,
                window_id=window.id,
                display_id=card.id[:8],
                session_name=card.session_name or session.name,
                name=card.name,
                command=card.command,
                working_dir=pane_dir or card.dir,
                started=True,
                closed=False,
                uncategorized=False,
                **signals,
            ))
        else:
            produced.append(BoardCard(
                card_id=window.id,
                window_id=window.id,
                display_id=window.id,
                session_name=session.name,
                name=window.name,
                command=pane_command,
                working_dir=pane_dir,
                started=True,
                closed=False,
                uncategorized=True,
                **signals,
            ))

    for card in config.cards.values():
        if card.id in matched:
            continue
        produced.append(BoardCard(
            card_id=card.id,
            window_id=None,
            display_id=card.id[:8],
            session_name=card.session_name,
            name=card.name,
            command=card.command,
            working_dir=card.dir,
            started=False,
            closed=card.started_at is not None,
        ))

    columns = [BoardColumn(id=c.id, title=c.title) for c in config.columns]
    if not columns:
        return []
    buckets = {col.id: col for col in columns}
    fallback = columns[0]
    for board_card in produced:
        if board_card.uncategorized:
            target = buckets.get(COL_UNASSIGNED, fallback)
        else:
            target = buckets.get(config.cards[board_card.card_id].column_id, fallback)
        target.cards.append(board_card)
    return columns


def board_card_count(columns: Iterable[BoardColumn]) -> int:
    return sum(len(col.cards) for col in columns)
