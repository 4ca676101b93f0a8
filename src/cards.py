"""Card lookup and lifecycle transitions.

Every function here is pure: it takes a BoardConfig (or a plain card map)
and returns a new value. A transition on an unknown card id returns the very
same BoardConfig object so callers can use `is` to detect a no-op and skip a
write.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import uuid

from models import (
    Card, BoardConfig, CUSTOM_COMMAND, now_ms,
    COL_UNASSIGNED, COL_TODO, COL_IN_PROGRESS, COL_REVIEW, COL_DONE,
)

MIN_PREFIX_LEN = 4

FOUND = "found"
NOT_FOUND = "not_found"
AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class ResolveResult:
    status: str
    card_id: Optional[str] = None
    card: Optional[Card] = None
    error: Optional[str] = None
    session_name: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == FOUND


# -------------------- identity resolution --------------------

def find_cards(cards: Mapping[str, Card], query: str) -> List[Tuple[str, Card]]:
    """Return the winning tier of matches for query.

    Tiers: exact id, id prefix (query of 4+ chars), exact name, name
    substring. Names compare case-insensitively. A non-empty prefix tier is
    returned as is, even when ambiguous.
    """
    if query in cards:
        return [(query, cards[query])]

    if len(query) >= MIN_PREFIX_LEN:
        prefixed = [(cid, c) for cid, c in cards.items() if cid.startswith(query)]
        if prefixed:
            return prefixed

    lower = query.lower()
    exact: List[Tuple[str, Card]] = []
    partial: List[Tuple[str, Card]] = []
    for cid, card in cards.items():
        name = card.name.lower()
        if name == lower:
            exact.append((cid, card))
        elif lower in name:
            partial.append((cid, card))
    return exact or partial


def _ambiguous_message(query: str, labelled: Iterable[Tuple[str, str]]) -> str:
    lines = "\n".join(f"  {label}" for _, label in labelled)
    return f'Ambiguous match for "{query}", multiple cards found:\n{lines}'


def resolve_card(cards: Mapping[str, Card], query: str) -> ResolveResult:
    matches = find_cards(cards, query)
    if not matches:
        return ResolveResult(NOT_FOUND, error=f'No card found matching "{query}"')
    if len(matches) > 1:
        labelled = [(cid, f"{cid[:8]} {card.name}") for cid, card in matches]
        return ResolveResult(AMBIGUOUS, error=_ambiguous_message(query, labelled))
    cid, card = matches[0]
    return ResolveResult(FOUND, card_id=cid, card=card)


def resolve_card_across_sessions(cards_by_session: Mapping[str, Mapping[str, Card]], query: str) -> ResolveResult:
    """Resolve a query over every session's cards at once.

    Each session contributes its own winning tier; the combined candidates
    must be exactly one card.
    """
    found: List[Tuple[str, str, Card]] = []
    for session_name, cards in cards_by_session.items():
        for cid, card in find_cards(cards, query):
            found.append((session_name, cid, card))
    if not found:
        return ResolveResult(NOT_FOUND, error=f'No card found matching "{query}" in any session')
    if len(found) > 1:
        labelled = [(cid, f"{cid[:8]} {card.name}  [{sname}]") for sname, cid, card in found]
        return ResolveResult(AMBIGUOUS, error=_ambiguous_message(query, labelled))
    sname, cid, card = found[0]
    return ResolveResult(FOUND, card_id=cid, card=card, session_name=sname)


# -------------------- lifecycle --------------------

def create_card(
    name: str,
    session_name: str,
    description: str = "",
    acceptance_criteria: str = "",
    dir: str = "",
    command: Optional[str] = None,
    custom_command: Optional[str] = None,
    worktree: bool = False,
    worktree_path: Optional[str] = None,
    now: Optional[int] = None,
) -> Card:
    """Build a new Todo card. Does not add it to any store."""
    return Card(
        id=str(uuid.uuid4()),
        name=name,
        session_name=session_name,
        created_at=now if now is not None else now_ms(),
        description=description,
        acceptance_criteria=acceptance_criteria,
        column_id=COL_TODO,
        dir=dir,
        command=command or "shell",
        custom_command=custom_command,
        worktree=worktree,
        worktree_path=worktree_path if worktree else None,
    )


def add_card(config: BoardConfig, card: Card) -> BoardConfig:
    return replace(config, cards={**config.cards, card.id: card})


def _update(config: BoardConfig, card_id: str, **changes) -> BoardConfig:
    card = config.cards.get(card_id)
    if card is None:
        return config
    return replace(config, cards={**config.cards, card_id: replace(card, **changes)})


def mark_started(config: BoardConfig, card_id: str, window_id: str, now: Optional[int] = None) -> BoardConfig:
    """Link card to window_id and move it to In Progress.

    closed_at is cleared even when left over from an earlier run.
    """
    ts = now if now is not None else now_ms()
    return _update(config, card_id, window_id=window_id, started_at=ts,
                   column_id=COL_IN_PROGRESS, closed_at=None)


def mark_stopped(config: BoardConfig, card_id: str, now: Optional[int] = None) -> BoardConfig:
    ts = now if now is not None else now_ms()
    return _update(config, card_id, window_id=None, closed_at=ts)


def mark_resolved(config: BoardConfig, card_id: str, now: Optional[int] = None) -> BoardConfig:
    ts = now if now is not None else now_ms()
    return _update(config, card_id, column_id=COL_DONE, window_id=None, closed_at=ts)


EDITABLE_FIELDS = (
    "name", "description", "acceptance_criteria", "dir",
    "command", "custom_command", "worktree", "worktree_path", "column_id",
)


def edit_card(config: BoardConfig, card_id: str, **fields) -> BoardConfig:
    """Apply only the supplied fields (None means "not supplied").

    Switching command away from "custom" drops the stale custom text;
    switching worktree off drops the worktree path.
    """
    card = config.cards.get(card_id)
    if card is None:
        return config
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise TypeError(f"edit_card() got unexpected fields: {', '.join(sorted(unknown))}")
    changes = {k: v for k, v in fields.items() if v is not None}
    if "command" in changes and changes["command"] != CUSTOM_COMMAND:
        changes["custom_command"] = None
    if changes.get("worktree") is False:
        changes["worktree_path"] = None
    if not changes:
        return config
    return replace(config, cards={**config.cards, card_id: replace(card, **changes)})


def set_column(config: BoardConfig, card_ids: Iterable[str], column_id: str) -> BoardConfig:
    """Rewrite column_id for each id; unknown ids and no-op moves are skipped."""
    cards: Optional[Dict[str, Card]] = None
    for cid in card_ids:
        card = config.cards.get(cid)
        if card is None or card.column_id == column_id:
            continue
        if cards is None:
            cards = dict(config.cards)
        cards[cid] = replace(card, column_id=column_id)
    if cards is None:
        return config
    return replace(config, cards=cards)


def move_card(config: BoardConfig, card_id: str, direction: str) -> BoardConfig:
    """Move a card one column left or right along the pipeline.

    The Unassigned pseudo column is not part of the pipeline; a card whose
    column is unknown is treated as sitting in Todo.
    """
    if direction not in ("left", "right"):
        raise ValueError(f"direction must be 'left' or 'right', not {direction!r}")
    card = config.cards.get(card_id)
    if card is None:
        return config
    pipeline = [cid for cid in config.column_ids() if cid != COL_UNASSIGNED]
    current = card.column_id if card.column_id in pipeline else COL_TODO
    if current not in pipeline:
        return config
    idx = pipeline.index(current) + (1 if direction == "right" else -1)
    if idx < 0 or idx >= len(pipeline):
        return config
    return set_column(config, [card_id], pipeline[idx])


# -------------------- column names --------------------

COLUMN_NAME_MAP: Dict[str, str] = {
    "unassigned": COL_UNASSIGNED,
    "todo": COL_TODO,
    "t": COL_TODO,
    "in progress": COL_IN_PROGRESS,
    "in-progress": COL_IN_PROGRESS,
    "inprogress": COL_IN_PROGRESS,
    "ip": COL_IN_PROGRESS,
    "review": COL_REVIEW,
    "r": COL_REVIEW,
    "done": COL_DONE,
    "d": COL_DONE,
}

COLUMN_TITLE_MAP: Dict[str, str] = {
    COL_UNASSIGNED: "Unassigned",
    COL_TODO: "Todo",
    COL_IN_PROGRESS: "In Progress",
    COL_REVIEW: "Review",
    COL_DONE: "Done",
}


def column_id_from_name(name: str) -> Optional[str]:
    return COLUMN_NAME_MAP.get(name.strip().lower())


def column_name_from_id(column_id: str) -> str:
    return COLUMN_TITLE_MAP.get(column_id, "Unknown")
