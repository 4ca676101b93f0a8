"""Static terminal rendering of a derived board.

Columns are laid out side by side: each gets at least MIN_COL_WIDTH, spare
terminal width is handed out round-robin, and when the board is too wide the
widest column is shaved first. Card titles wrap on word boundaries.
"""
from __future__ import annotations
from typing import Dict, List, Mapping, Sequence
import re, shutil

from activity import should_show_preview
from models import BoardCard, BoardColumn
from theme import color, column_color, HEADER_COLOR, ID_COLOR, EMPTY_COLOR, PREVIEW_COLOR, INDICATOR_COLORS, BOLD

MIN_COL_WIDTH = 18
SEP = " | "
ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

SPINNER_FRAME = "⠋"
IND_CLOSED = "◇"
IND_ACTIVITY = "◆"
IND_ACTIVE = "●"
IND_LIVE = "○"


def visible_len(s: str) -> int:
    return len(ANSI_RE.sub('', s))


def format_idle_time(seconds: int) -> str:
    if seconds < 60:
        return f"idle {seconds}s"
    if seconds < 3600:
        return f"idle {seconds // 60}m"
    return f"idle {seconds // 3600}h"


def indicator_for(card: BoardCard) -> str:
    """Closed beats spinner beats activity beats focus beats plain live."""
    if card.closed:
        return IND_CLOSED
    if card.spinning:
        return SPINNER_FRAME
    if card.has_activity:
        return IND_ACTIVITY
    if card.active and card.window_id:
        return IND_ACTIVE
    if card.window_id:
        return IND_LIVE
    return ""


def _wrap_words(text: str, limit: int) -> List[str]:
    lines: List[str] = []
    current = ''
    for word in text.split():
        while len(word) > limit:
            if current:
                lines.append(current)
                current = ''
            lines.append(word[:limit])
            word = word[limit:]
        candidate = word if not current else current + ' ' + word
        if len(candidate) <= limit:
            current = candidate
        else:
            if current:
                lines.append(current)
            current = word
    if current:
        lines.append(current)
    return lines


def card_lines(card: BoardCard, col_id: str, width: int) -> List[str]:
    ind = indicator_for(card)
    prefix_visible = f"{ind} " if ind else "  "
    prefix = (color(ind, INDICATOR_COLORS.get(ind, '')) + ' ') if ind else "  "
    indent = ' ' * len(prefix_visible)
    limit = max(1, width - len(prefix_visible))
    title = card.name or '<untitled>'
    raw = _wrap_words(title, limit) or ['<untitled>']

    suffix = card.display_id[:8]
    if card.idle_time is not None and not card.spinning and card.window_id:
        suffix += f" {format_idle_time(card.idle_time)}"
    if len(raw[-1]) + 1 + len(suffix) <= limit:
        raw[-1] = raw[-1] + ' ' + suffix
        suffix_line = None
    else:
        suffix_line = suffix

    lines: List[str] = []
    body_col = column_color(col_id)
    for idx, text in enumerate(raw):
        lead = prefix if idx == 0 else indent
        if idx == len(raw) - 1 and suffix_line is None:
            head = text[:len(text) - len(suffix)]
            lines.append(lead + color(head, body_col) + color(suffix, ID_COLOR))
        else:
            lines.append(lead + color(text, body_col))
    if suffix_line is not None:
        lines.append(indent + color(suffix_line[:limit], ID_COLOR))

    if card.preview and should_show_preview(card.window_id, card.closed, card.spinning, card.idle_time):
        for pline in card.preview:
            lines.append(indent + color(pline[:limit], PREVIEW_COLOR))
    return lines


def compute_column_widths(columns: Sequence[BoardColumn], term_width: int) -> Dict[str, int]:
    ids = [c.id for c in columns]
    sep_total = len(SEP) * (len(columns) - 1)
    widths: Dict[str, int] = {}
    for col in columns:
        longest = len(col.title) + 4
        for card in col.cards:
            longest = max(longest, len(card.name) + 2 + 1 + 8)
        widths[col.id] = max(MIN_COL_WIDTH, longest)
    total = sum(widths.values()) + sep_total
    if total > term_width:
        target = max(term_width - sep_total, len(columns) * MIN_COL_WIDTH)
        while sum(widths.values()) > target:
            widest = max(ids, key=lambda i: widths[i])
            if widths[widest] <= MIN_COL_WIDTH:
                break
            widths[widest] -= 1
    elif ids:
        extra = term_width - total
        i = 0
        while extra > 0:
            widths[ids[i % len(ids)]] += 1
            extra -= 1
            i += 1
    return widths


def render_board(columns: Sequence[BoardColumn], term_width: int) -> List[str]:
    """Return the board as printable lines (ANSI colored when enabled)."""
    if not columns:
        return []
    widths = compute_column_widths(columns, term_width)
    wrapped: Mapping[str, List[str]] = {
        col.id: ([line for card in col.cards for line in card_lines(card, col.id, widths[col.id])]
                 or [color('(empty)', EMPTY_COLOR)])
        for col in columns
    }

    def pad(text: str, width: int) -> str:
        gap = width - visible_len(text)
        return text + ' ' * gap if gap > 0 else text

    out: List[str] = []
    out.append(SEP.join(pad(color(f"{c.title} ({len(c.cards)})", HEADER_COLOR, BOLD), widths[c.id]) for c in columns))
    out.append(SEP.join(color('-' * widths[c.id], HEADER_COLOR) for c in columns))
    rows = max(len(lines) for lines in wrapped.values())
    for r in range(rows):
        cells = []
        for col in columns:
            lines = wrapped[col.id]
            cells.append(pad(lines[r], widths[col.id]) if r < len(lines) else ' ' * widths[col.id])
        out.append(SEP.join(cells).rstrip())
    return out


def display(columns: Sequence[BoardColumn]) -> None:
    term_width = shutil.get_terminal_size((120, 30)).columns
    for line in render_board(columns, term_width):
        print(line)


# --- terminal control helpers ---
# ESC[3J (scrollback) first, then home/clear/home; some terminals need that order.
def clear_screen() -> None:
    print("\033[3J\033[H\033[2J\033[H", end="", flush=True)


def enter_alt_screen() -> None:
    print("\033[?1049h", end="", flush=True)


def leave_alt_screen() -> None:
    print("\033[?1049l", end="", flush=True)


def redraw(columns: Sequence[BoardColumn], title: str = "tukan") -> None:
    clear_screen()
    print(color(title, HEADER_COLOR, BOLD))
    display(columns)
