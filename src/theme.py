"""ANSI color helpers for the board view.

Decisions:
- Truecolor when COLORTERM advertises it, otherwise the xterm 256 cube.
- Off when stdout is not a TTY (unless FORCE_COLOR) and whenever NO_COLOR
  is set.
- Palette entries can be overridden with TUKAN_* hex values, from the real
  environment first, then the project .env file (see config.read_dotenv).
"""
from __future__ import annotations
import os, sys
from typing import Dict

from config import DOTENV_PATH, read_dotenv
from models import COL_UNASSIGNED, COL_TODO, COL_IN_PROGRESS, COL_REVIEW, COL_DONE

_FORCE = os.environ.get("FORCE_COLOR", "").lower() in {"1", "true", "yes", "on"}
_NO_COLOR = os.environ.get("NO_COLOR") is not None
_ENABLE = (_FORCE or sys.stdout.isatty()) and not _NO_COLOR
_USE_TRUECOLOR = _ENABLE and any(tok in os.environ.get("COLORTERM", "").lower() for tok in ("truecolor", "24bit"))


def _code(part: str) -> str:
    return f"\033[{part}m" if _ENABLE else ''


def _is_hex(value: str) -> bool:
    h = value.lstrip('#')
    return len(h) == 6 and all(c in '0123456789abcdefABCDEF' for c in h)


def _fg(hex_code: str) -> str:
    """Foreground escape for a #rrggbb value (truecolor or nearest cube cell)."""
    if not _ENABLE:
        return ''
    h = hex_code.lstrip('#')
    r, g, b = int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16)
    if _USE_TRUECOLOR:
        return f"\033[38;2;{r};{g};{b}m"
    cube = [int(round(x / 255 * 5)) for x in (r, g, b)]
    return f"\033[38;5;{16 + 36 * cube[0] + 6 * cube[1] + cube[2]}m"


RESET = _code('0')
BOLD = _code('1')
DIM = _code('2')

PALETTE_DEFAULTS: Dict[str, str] = {
    'TUKAN_PRIMARY': '#476EAE',
    'TUKAN_UNASSIGNED': '#9A9A9A',
    'TUKAN_TODO': '#48B3AF',
    'TUKAN_INPROGRESS': '#F6FF99',
    'TUKAN_REVIEW': '#F2A65A',
    'TUKAN_DONE': '#A7E399',
}


def _resolve_palette() -> Dict[str, str]:
    dotenv = read_dotenv(DOTENV_PATH)
    palette: Dict[str, str] = {}
    for key, default in PALETTE_DEFAULTS.items():
        candidate = os.environ.get(key) or dotenv.get(key) or default
        palette[key] = candidate if _is_hex(candidate) else default
    return palette


PALETTE = _resolve_palette()
PRIMARY = _fg(PALETTE['TUKAN_PRIMARY'])

COLUMN_COLOR: Dict[str, str] = {
    COL_UNASSIGNED: _fg(PALETTE['TUKAN_UNASSIGNED']),
    COL_TODO: _fg(PALETTE['TUKAN_TODO']),
    COL_IN_PROGRESS: _fg(PALETTE['TUKAN_INPROGRESS']),
    COL_REVIEW: _fg(PALETTE['TUKAN_REVIEW']),
    COL_DONE: _fg(PALETTE['TUKAN_DONE']),
}

HEADER_COLOR = PRIMARY
ID_COLOR = DIM + PRIMARY
EMPTY_COLOR = DIM + PRIMARY
PREVIEW_COLOR = DIM

INDICATOR_COLORS: Dict[str, str] = {
    "⠋": _fg('#FFD75F'),
    "◆": _fg('#FF8787'),
    "●": _fg('#87D787'),
    "◇": DIM,
}


def column_color(column_id: str) -> str:
    return COLUMN_COLOR.get(column_id, '')


def color(text: str, *styles: str) -> str:
    if not _ENABLE or not text:
        return text
    return ''.join(styles) + text + RESET
