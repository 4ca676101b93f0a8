"""Data models for tukan.

Column ids are stable strings ("0".."4") decoupled from display titles so a
renamed column never orphans its cards. Card timestamps are epoch
milliseconds. Everything here is treated as a value: transitions build new
instances with dataclasses.replace instead of mutating.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import time

COL_UNASSIGNED = "0"
COL_TODO = "1"
COL_IN_PROGRESS = "2"
COL_REVIEW = "3"
COL_DONE = "4"

CUSTOM_COMMAND = "custom"


def now_ms() -> int:
    return int(time.time() * 1000)


class CommandKind(Enum):
    """Variant of a card's command reference.

    SHELL and CLAUDE are the built-in definitions, CUSTOM carries free text on
    the card itself, DEFINED points at any other row of the command table.
    """
    SHELL = "shell"
    CLAUDE = "claude"
    CUSTOM = "custom"
    DEFINED = "defined"


def command_kind(command: str) -> CommandKind:
    if command == CommandKind.SHELL.value:
        return CommandKind.SHELL
    if command == CommandKind.CLAUDE.value:
        return CommandKind.CLAUDE
    if command == CUSTOM_COMMAND:
        return CommandKind.CUSTOM
    return CommandKind.DEFINED


@dataclass(frozen=True)
class CommandDef:
    id: str
    label: str
    template: str


DEFAULT_COMMANDS: Tuple[CommandDef, ...] = (
    CommandDef(id="shell", label="Shell", template=""),
    CommandDef(id="claude", label="Claude", template="claude"),
)


@dataclass(frozen=True)
class Column:
    id: str
    title: str


DEFAULT_COLUMNS: Tuple[Column, ...] = (
    Column(COL_UNASSIGNED, "Unassigned"),
    Column(COL_TODO, "Todo"),
    Column(COL_IN_PROGRESS, "In Progress"),
    Column(COL_REVIEW, "Review"),
    Column(COL_DONE, "Done"),
)


@dataclass(frozen=True)
class Card:
    """A persisted unit of work.

    Fields:
        id: uuid4 string, assigned once and never reused.
        column_id: One of the COL_* ids (stale ids are tolerated on read).
        command: Key into BoardConfig.commands, or "custom".
        custom_command: Free text used only when command == "custom".
        window_id: tmux window id ("@12") while the card is linked to a window.
        created_at / started_at / closed_at: epoch ms.
    """
    id: str
    name: str
    session_name: str
    created_at: int
    description: str = ""
    acceptance_criteria: str = ""
    column_id: str = COL_TODO
    dir: str = ""
    command: str = "shell"
    custom_command: Optional[str] = None
    worktree: bool = False
    worktree_path: Optional[str] = None
    window_id: Optional[str] = None
    started_at: Optional[int] = None
    closed_at: Optional[int] = None

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        return f"Card(id={self.id[:8]}, name={self.name!r}, column={self.column_id})"


@dataclass(frozen=True)
class BoardConfig:
    """The card store for one session: columns, cards and command table."""
    columns: Tuple[Column, ...] = DEFAULT_COLUMNS
    cards: Dict[str, Card] = field(default_factory=dict)
    commands: Tuple[CommandDef, ...] = DEFAULT_COMMANDS
    idle_threshold_ms: Optional[int] = None

    def column_ids(self) -> List[str]:
        return [c.id for c in self.columns]


# -------------------- process tree snapshot --------------------

@dataclass(frozen=True)
class TmuxPane:
    id: str
    index: int
    active: bool
    command: str
    pid: int
    working_dir: str
    width: int = 0
    height: int = 0


@dataclass(frozen=True)
class TmuxWindow:
    id: str
    index: int
    name: str
    active: bool
    panes: Tuple[TmuxPane, ...] = ()


@dataclass(frozen=True)
class TmuxSession:
    id: str
    name: str
    attached: bool
    windows: Tuple[TmuxWindow, ...] = ()


@dataclass(frozen=True)
class TmuxServer:
    server_name: str
    sessions: Tuple[TmuxSession, ...] = ()

    def windows(self):
        """Yield (session, window) pairs in enumeration order."""
        for session in self.sessions:
            for window in session.windows:
                yield session, window


# -------------------- derived view --------------------

@dataclass(frozen=True)
class ActivityEntry:
    has_activity: bool
    last_change_time: int
    spinning: bool = False


@dataclass
class BoardCard:
    """Per-render view model; rebuilt on every derive() and never persisted."""
    card_id: str
    window_id: Optional[str]
    display_id: str
    session_name: str
    name: str
    command: str
    working_dir: str
    active: bool = False
    started: bool = False
    closed: bool = False
    uncategorized: bool = False
    has_activity: bool = False
    spinning: bool = False
    idle_time: Optional[int] = None
    preview: Optional[List[str]] = None


@dataclass
class BoardColumn:
    id: str
    title: str
    cards: List[BoardCard] = field(default_factory=list)
