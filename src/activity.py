"""Pane activity tracking and idle detection.

A poll tick hashes every pane's captured text, diffs against the previous
tick and folds the result into a per-window ActivityEntry map. The column
decisions built on top (idle promotion, activity demotion) only return card
ids; applying them is left to cards.set_column.

Decisions:
- A pane seen for the first time never counts as changed, so startup does
  not flash every window as active.
- The window the user is looking at never carries an activity marker.
- Idle threshold is inclusive: exactly threshold ms of silence qualifies.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Set
import hashlib

from models import ActivityEntry, Card, COL_IN_PROGRESS, COL_REVIEW

IDLE_PROMOTE_MS = 2 * 60 * 1000

PREVIEW_IDLE_THRESHOLD_S = 5
PREVIEW_MAX_LINES = 3

ActivityMap = Dict[str, ActivityEntry]
PaneHashMap = Dict[str, str]


def hash_content(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def compute_pane_hashes(pane_contents: Mapping[str, str]) -> PaneHashMap:
    return {pane_id: hash_content(text) for pane_id, text in pane_contents.items()}


def detect_changed_panes(prev: Mapping[str, str], current: Mapping[str, str]) -> Set[str]:
    changed: Set[str] = set()
    for pane_id, digest in current.items():
        before = prev.get(pane_id)
        if before is not None and before != digest:
            changed.add(pane_id)
    return changed


def changed_windows(changed_panes: Iterable[str], pane_to_window: Mapping[str, str]) -> Set[str]:
    windows: Set[str] = set()
    for pane_id in changed_panes:
        window_id = pane_to_window.get(pane_id)
        if window_id:
            windows.add(window_id)
    return windows


def build_activity_map(
    changed: Set[str],
    pane_to_window: Mapping[str, str],
    focused_window_id: Optional[str],
    prev_activity: Mapping[str, ActivityEntry],
    now: int,
) -> ActivityMap:
    """Fold one tick of window changes into the activity map.

    `changed` holds window ids (see changed_windows). Entries are carried
    forward with spinning reset, unseen windows get a quiet baseline, changed
    windows light up, and the focused window is always cleared.
    """
    result: ActivityMap = {wid: replace(entry, spinning=False) for wid, entry in prev_activity.items()}

    for window_id in pane_to_window.values():
        if window_id not in result:
            result[window_id] = ActivityEntry(has_activity=False, last_change_time=now, spinning=False)

    for window_id in changed:
        result[window_id] = ActivityEntry(has_activity=True, last_change_time=now, spinning=True)

    if focused_window_id and focused_window_id in result:
        result[focused_window_id] = replace(result[focused_window_id], has_activity=False, spinning=False)

    return result


@dataclass(frozen=True)
class ActivityTick:
    pane_hashes: PaneHashMap
    activity: ActivityMap
    changed_windows: Set[str]


def poll_activity(
    prev_hashes: Mapping[str, str],
    prev_activity: Mapping[str, ActivityEntry],
    pane_contents: Mapping[str, str],
    pane_to_window: Mapping[str, str],
    focused_window_id: Optional[str],
    now: int,
) -> ActivityTick:
    """Run one full poll tick over freshly captured pane contents."""
    hashes = compute_pane_hashes(pane_contents)
    windows = changed_windows(detect_changed_panes(prev_hashes, hashes), pane_to_window)
    activity = build_activity_map(windows, pane_to_window, focused_window_id, prev_activity, now)
    return ActivityTick(pane_hashes=hashes, activity=activity, changed_windows=windows)


def last_change_times(activity: Mapping[str, ActivityEntry]) -> Dict[str, int]:
    return {wid: entry.last_change_time for wid, entry in activity.items()}


def check_idle(last_change: int, now: int, threshold_ms: int) -> Optional[int]:
    """Return idle milliseconds once threshold_ms is reached, else None."""
    idle = now - last_change
    return idle if idle >= threshold_ms else None


# -------------------- column decisions --------------------

def get_idle_promotions(
    cards: Mapping[str, Card],
    last_change: Mapping[str, int],
    now: int,
    threshold_ms: int = IDLE_PROMOTE_MS,
) -> List[str]:
    """Card ids in In Progress whose live window has been quiet long enough."""
    result: List[str] = []
    for card_id, card in cards.items():
        if card.column_id != COL_IN_PROGRESS or not card.window_id:
            continue
        changed_at = last_change.get(card.window_id)
        if changed_at is not None and check_idle(changed_at, now, threshold_ms) is not None:
            result.append(card_id)
    return result


def get_review_demotions(cards: Mapping[str, Card], changed: Set[str]) -> List[str]:
    """Card ids in Review whose window changed during this tick."""
    return [
        card_id for card_id, card in cards.items()
        if card.column_id == COL_REVIEW and card.window_id and card.window_id in changed
    ]


def get_review_demotions_by_time(
    cards: Mapping[str, Card],
    last_change: Mapping[str, int],
    now: int,
    threshold_ms: int = IDLE_PROMOTE_MS,
) -> List[str]:
    """Demotions for callers without a tick: Review cards touched recently.

    A card promoted for idleness has, by definition, a last change at least
    threshold_ms old, so this never undoes a promotion on its own.
    """
    result: List[str] = []
    for card_id, card in cards.items():
        if card.column_id != COL_REVIEW or not card.window_id:
            continue
        changed_at = last_change.get(card.window_id)
        if changed_at is not None and now - changed_at < threshold_ms:
            result.append(card_id)
    return result


def restore_change_times(
    saved_times: Mapping[str, int],
    saved_hashes: Mapping[str, str],
    fresh_hashes: Mapping[str, str],
    pane_to_window: Mapping[str, str],
    now: int,
) -> Dict[str, int]:
    """Rebuild persisted last-change times when tukan starts again.

    With saved hashes, windows whose panes changed while nobody was watching
    restart their idle clock; untouched windows keep the real timestamp.
    Without saved hashes nothing can be trusted and every clock restarts.
    """
    if not saved_hashes:
        return {wid: now for wid in saved_times}
    touched = changed_windows(detect_changed_panes(saved_hashes, fresh_hashes), pane_to_window)
    return {wid: (now if wid in touched else ts) for wid, ts in saved_times.items()}


def seed_activity(times: Mapping[str, int]) -> ActivityMap:
    return {wid: ActivityEntry(has_activity=False, last_change_time=ts) for wid, ts in times.items()}


# -------------------- pane preview --------------------

def extract_preview_lines(raw: str, max_lines: int = PREVIEW_MAX_LINES) -> List[str]:
    """Last max_lines non-blank lines of raw pane text, right-trimmed."""
    lines = [line.rstrip() for line in raw.split("\n")]
    non_blank = [line for line in lines if line]
    if not non_blank:
        return []
    return non_blank[-max_lines:]


def build_preview_map(
    pane_contents: Mapping[str, str],
    pane_to_window: Mapping[str, str],
    max_lines: int = PREVIEW_MAX_LINES,
) -> Dict[str, List[str]]:
    """window id -> preview lines, from the first pane seen per window."""
    result: Dict[str, List[str]] = {}
    for pane_id, content in pane_contents.items():
        window_id = pane_to_window.get(pane_id)
        if not window_id or window_id in result:
            continue
        lines = extract_preview_lines(content, max_lines)
        if lines:
            result[window_id] = lines
    return result


def should_show_preview(
    window_id: Optional[str],
    closed: bool,
    spinning: bool,
    idle_time: Optional[int],
    threshold_s: int = PREVIEW_IDLE_THRESHOLD_S,
) -> bool:
    if not window_id or closed or spinning or idle_time is None:
        return False
    return idle_time >= threshold_s
