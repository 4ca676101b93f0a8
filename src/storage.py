"""Persistence for tukan boards (load/save/migrate).

Layout of state.json:

    {"version": 3,
     "sessions": {"<session>": {"board": {...},
                                "working_dir": "...",
                                "last_change_times": {"@3": 1700000000000},
                                "pane_hashes": {"%7": "<sha1>"}}}}

The board record is versioned separately from the ephemeral activity state so
it can be migrated on read. Older board shapes go through MIGRATIONS, a chain
of pure `dict -> dict` steps; each step only knows its own predecessor.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
import json
import logging
import re
import uuid

from models import (
    BoardConfig, Card, Column, CommandDef, DEFAULT_COLUMNS, DEFAULT_COMMANDS,
    COL_DONE, CUSTOM_COMMAND, now_ms,
)

logger = logging.getLogger(__name__)

BOARD_VERSION = 3
STATE_FILE_NAME = "state.json"

RawBoard = Dict[str, Any]


# -------------------- migrations --------------------

def detect_version(raw: RawBoard) -> int:
    """Version stamped on the record, or inferred from its shape."""
    version = raw.get("version")
    if isinstance(version, int):
        return version
    if "assignments" in raw or "virtualCards" in raw or "cardMeta" in raw:
        return 0
    cards = raw.get("cards")
    if isinstance(cards, dict) and "commands" in raw:
        return 2
    return 1


def _v0_to_v1(raw: RawBoard, now: int) -> RawBoard:
    """assignments + virtualCards + cardMeta -> one cards map (camelCase)."""
    cards: Dict[str, Dict[str, Any]] = {}
    for vc in raw.get("virtualCards") or []:
        if not isinstance(vc, dict) or "id" not in vc:
            continue
        cards[vc["id"]] = {
            "id": vc["id"],
            "name": vc.get("name", ""),
            "description": vc.get("description", ""),
            "acceptanceCriteria": vc.get("acceptanceCriteria", ""),
            "columnId": vc.get("columnId", ""),
            "sessionName": vc.get("sessionName", ""),
            "dir": vc.get("dir", ""),
            "command": vc.get("command", "shell"),
            "customCommand": vc.get("customCommand"),
            "worktree": bool(vc.get("worktree", False)),
            "worktreePath": vc.get("worktreePath"),
            "createdAt": now,
        }
    meta = raw.get("cardMeta") or {}
    for window_id, column_id in (raw.get("assignments") or {}).items():
        card_meta = meta.get(window_id) or {}
        cid = str(uuid.uuid4())
        cards[cid] = {
            "id": cid,
            # tmux supplies the real window name at runtime
            "name": window_id,
            "description": card_meta.get("description", ""),
            "acceptanceCriteria": card_meta.get("acceptanceCriteria", ""),
            "columnId": column_id,
            "sessionName": "",
            "dir": "",
            "command": "shell",
            "worktree": False,
            "windowId": window_id,
            "createdAt": now,
            "startedAt": now,
        }
    return {"columns": list(raw.get("columns") or []), "cards": cards}


def _command_slug(text: str) -> str:
    return "cmd-" + re.sub(r"[^a-z0-9]", "-", text, flags=re.IGNORECASE).lower()[:16]


def _v1_to_v2(raw: RawBoard, now: int) -> RawBoard:
    """Add the Done column and command table; fold custom commands into it.

    Cards whose custom text matches an existing template share that
    definition.
    """
    columns = list(raw.get("columns") or [])
    if not columns:
        columns = [{"id": c.id, "title": c.title} for c in DEFAULT_COLUMNS]
    if not any(isinstance(c, dict) and c.get("id") == COL_DONE for c in columns):
        columns.append({"id": COL_DONE, "title": "Done"})

    commands = list(raw.get("commands") or [])
    if not commands:
        commands = [{"id": c.id, "label": c.label, "template": c.template} for c in DEFAULT_COMMANDS]

    cards: Dict[str, Dict[str, Any]] = {}
    for cid, card in (raw.get("cards") or {}).items():
        card = dict(card)
        text = card.get("customCommand")
        if card.get("command") == CUSTOM_COMMAND and text:
            existing = next((c for c in commands if c.get("template") == text), None)
            if existing is None:
                existing = {"id": _command_slug(text), "label": text, "template": text}
                if not any(c.get("id") == existing["id"] for c in commands):
                    commands.append(existing)
            card["command"] = existing["id"]
            card["customCommand"] = None
        cards[cid] = card
    out = dict(raw)
    out.update(columns=columns, cards=cards, commands=commands)
    return out


_CAMEL_KEYS = {
    "acceptanceCriteria": "acceptance_criteria",
    "columnId": "column_id",
    "sessionName": "session_name",
    "customCommand": "custom_command",
    "worktreePath": "worktree_path",
    "windowId": "window_id",
    "createdAt": "created_at",
    "startedAt": "started_at",
    "closedAt": "closed_at",
    "idleThresholdMs": "idle_threshold_ms",
}


def _v2_to_v3(raw: RawBoard, now: int) -> RawBoard:
    """camelCase keys -> snake_case, version stamped."""
    cards = {
        cid: {_CAMEL_KEYS.get(k, k): v for k, v in card.items()}
        for cid, card in (raw.get("cards") or {}).items()
    }
    out = {_CAMEL_KEYS.get(k, k): v for k, v in raw.items()}
    out["cards"] = cards
    out["version"] = 3
    return out


MIGRATIONS: List[Tuple[int, Callable[[RawBoard, int], RawBoard]]] = [
    (0, _v0_to_v1),
    (1, _v1_to_v2),
    (2, _v2_to_v3),
]


def migrate_raw(raw: RawBoard, now: Optional[int] = None) -> RawBoard:
    ts = now if now is not None else now_ms()
    version = detect_version(raw)
    data = raw
    for from_version, step in MIGRATIONS:
        if version == from_version:
            data = step(data, ts)
            version += 1
            logger.debug("Migrated board record v%d -> v%d", from_version, version)
    return data


def migrate_board(raw: Optional[RawBoard], now: Optional[int] = None) -> BoardConfig:
    """Any historical board shape -> canonical BoardConfig."""
    if not raw:
        return BoardConfig()
    return board_from_dict(migrate_raw(raw, now))


# -------------------- canonical (de)serialization --------------------

def _card_from_dict(cid: str, d: Dict[str, Any]) -> Card:
    return Card(
        id=str(d.get("id") or cid),
        name=str(d.get("name", "")),
        session_name=str(d.get("session_name", "")),
        created_at=int(d.get("created_at") or 0),
        description=str(d.get("description", "")),
        acceptance_criteria=str(d.get("acceptance_criteria", "")),
        column_id=str(d.get("column_id", "")),
        dir=str(d.get("dir", "")),
        command=str(d.get("command") or "shell"),
        custom_command=d.get("custom_command"),
        worktree=bool(d.get("worktree", False)),
        worktree_path=d.get("worktree_path"),
        window_id=d.get("window_id") or None,
        started_at=d.get("started_at"),
        closed_at=d.get("closed_at"),
    )


def board_from_dict(data: RawBoard) -> BoardConfig:
    columns = tuple(
        Column(id=str(c["id"]), title=str(c.get("title", c["id"])))
        for c in data.get("columns") or [] if isinstance(c, dict) and "id" in c
    ) or DEFAULT_COLUMNS
    commands = tuple(
        CommandDef(id=str(c["id"]), label=str(c.get("label", c["id"])), template=str(c.get("template", "")))
        for c in data.get("commands") or [] if isinstance(c, dict) and "id" in c
    ) or DEFAULT_COMMANDS
    cards = {
        str(d.get("id") or cid): _card_from_dict(cid, d)
        for cid, d in (data.get("cards") or {}).items() if isinstance(d, dict)
    }
    threshold = data.get("idle_threshold_ms")
    return BoardConfig(
        columns=columns,
        cards=cards,
        commands=commands,
        idle_threshold_ms=int(threshold) if isinstance(threshold, (int, float)) else None,
    )


def card_to_dict(card: Card) -> Dict[str, Any]:
    return {
        "id": card.id,
        "name": card.name,
        "description": card.description,
        "acceptance_criteria": card.acceptance_criteria,
        "column_id": card.column_id,
        "session_name": card.session_name,
        "dir": card.dir,
        "command": card.command,
        "custom_command": card.custom_command,
        "worktree": card.worktree,
        "worktree_path": card.worktree_path,
        "window_id": card.window_id,
        "created_at": card.created_at,
        "started_at": card.started_at,
        "closed_at": card.closed_at,
    }


def board_to_dict(config: BoardConfig) -> RawBoard:
    data: RawBoard = {
        "version": BOARD_VERSION,
        "columns": [{"id": c.id, "title": c.title} for c in config.columns],
        "cards": {cid: card_to_dict(card) for cid, card in config.cards.items()},
        "commands": [{"id": c.id, "label": c.label, "template": c.template} for c in config.commands],
    }
    if config.idle_threshold_ms is not None:
        data["idle_threshold_ms"] = config.idle_threshold_ms
    return data


# -------------------- session state file --------------------

@dataclass
class SessionState:
    board: BoardConfig = field(default_factory=BoardConfig)
    working_dir: Optional[str] = None
    last_change_times: Dict[str, int] = field(default_factory=dict)
    pane_hashes: Dict[str, str] = field(default_factory=dict)


def _session_from_dict(data: Dict[str, Any]) -> SessionState:
    return SessionState(
        board=migrate_board(data.get("board")),
        working_dir=data.get("working_dir") or data.get("workingDir"),
        last_change_times={k: int(v) for k, v in (data.get("last_change_times") or data.get("lastChangeTimes") or {}).items()},
        pane_hashes=dict(data.get("pane_hashes") or data.get("paneHashes") or {}),
    )


def _session_to_dict(state: SessionState) -> Dict[str, Any]:
    return {
        "board": board_to_dict(state.board),
        "working_dir": state.working_dir,
        "last_change_times": dict(state.last_change_times),
        "pane_hashes": dict(state.pane_hashes),
    }


class Storage:
    """JSON state file holding one SessionState per tmux session name."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def in_dir(cls, state_dir: Path) -> "Storage":
        return cls(Path(state_dir) / STATE_FILE_NAME)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": BOARD_VERSION, "sessions": {}}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read %s (%s); starting from an empty state", self.path, exc)
            return {"version": BOARD_VERSION, "sessions": {}}
        if not isinstance(data, dict) or not isinstance(data.get("sessions"), dict):
            logger.warning("Unexpected layout in %s; starting from an empty state", self.path)
            return {"version": BOARD_VERSION, "sessions": {}}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            tmp_path.replace(self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def session_names(self) -> List[str]:
        return sorted(self._read()["sessions"].keys())

    def load_session(self, name: str) -> SessionState:
        raw = self._read()["sessions"].get(name)
        if not isinstance(raw, dict):
            return SessionState()
        return _session_from_dict(raw)

    def load_all(self) -> Dict[str, SessionState]:
        sessions = self._read()["sessions"]
        return {name: _session_from_dict(raw) for name, raw in sessions.items() if isinstance(raw, dict)}

    def save_session(self, name: str, state: SessionState) -> None:
        """Persist one session (read-modify-write; last writer wins)."""
        data = self._read()
        data["version"] = BOARD_VERSION
        data["sessions"][name] = _session_to_dict(state)
        self._write(data)
