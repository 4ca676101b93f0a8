"""Runtime settings.

Resolution order for every key: real environment > project .env file >
built-in default. Only the boundary (cli, theme) calls into this module; the
board core receives plain values.

Note on the idle threshold: older user-facing docs promised promotion to
Review after 30 seconds, the promotion code has always used 2 minutes.
TUKAN_IDLE_MS keeps the 2 minute default until that is settled.
"""
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional
import logging

from activity import IDLE_PROMOTE_MS

logger = logging.getLogger(__name__)

DOTENV_PATH = Path(__file__).resolve().parent.parent / '.env'
DEFAULT_STATE_DIR = Path.home() / ".config" / "tukan"


@dataclass(frozen=True)
class Settings:
    state_dir: Path = DEFAULT_STATE_DIR
    idle_threshold_ms: int = IDLE_PROMOTE_MS
    topology_interval: float = 1.0
    activity_interval: float = 3.0
    watch_interval: float = 0.5
    log_level: str = "WARNING"
    alt_screen: bool = True

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"


def read_dotenv(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines; comments, blanks and malformed lines are skipped."""
    values: Dict[str, str] = {}
    if not path.exists():
        return values
    try:
        text = path.read_text()
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return values
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        k, v = line.split('=', 1)
        values[k.strip()] = v.strip().strip('"').strip("'")
    return values


def truthy(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off", ""}


def _number(raw: Optional[str], default, cast, key: str):
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", key, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", key, raw)
        return default
    return value


def load_settings(env: Mapping[str, str], dotenv_path: Optional[Path] = DOTENV_PATH) -> Settings:
    file_values = read_dotenv(dotenv_path) if dotenv_path is not None else {}

    def get(key: str) -> Optional[str]:
        return env.get(key) or file_values.get(key)

    state_dir = get("TUKAN_STATE_DIR")
    return Settings(
        state_dir=Path(state_dir).expanduser() if state_dir else DEFAULT_STATE_DIR,
        idle_threshold_ms=_number(get("TUKAN_IDLE_MS"), IDLE_PROMOTE_MS, int, "TUKAN_IDLE_MS"),
        topology_interval=_number(get("TUKAN_TOPOLOGY_INTERVAL"), 1.0, float, "TUKAN_TOPOLOGY_INTERVAL"),
        activity_interval=_number(get("TUKAN_ACTIVITY_INTERVAL"), 3.0, float, "TUKAN_ACTIVITY_INTERVAL"),
        watch_interval=_number(get("TUKAN_WATCH_INTERVAL"), 0.5, float, "TUKAN_WATCH_INTERVAL"),
        log_level=(get("TUKAN_LOG_LEVEL") or "WARNING").upper(),
        alt_screen=truthy(get("TUKAN_ALT_SCREEN"), True),
    )


def effective_idle_threshold(board_override: Optional[int], settings: Settings) -> int:
    """Per-board override wins over the environment-wide setting."""
    if board_override is not None and board_override > 0:
        return board_override
    return settings.idle_threshold_ms
