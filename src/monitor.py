"""Live board driver behind `tukan board --follow`.

Two periodic tasks share one BoardMonitor:

- topology (default every 1s): list the session's windows, reconcile
  closed_at bookkeeping, persist if the store changed, redraw.
- activity (default every 3s): capture every pane, fold the hashes into the
  activity map, apply idle promotions / activity demotions, persist the
  activity state, redraw.

Neither waits on the other; the latest snapshot is shared through the
instance.
"""
from __future__ import annotations
from typing import Callable, Dict, List, Optional
import asyncio
import logging

from activity import (
    ActivityMap, build_preview_map, compute_pane_hashes, get_idle_promotions,
    get_review_demotions, last_change_times, poll_activity, restore_change_times,
    seed_activity,
)
from board import derive, pane_window_map, reconcile, self_window_id, live_window_ids
from cards import set_column
from config import Settings, effective_idle_threshold
from models import BoardColumn, TmuxServer, COL_IN_PROGRESS, COL_REVIEW, now_ms
from storage import SessionState, Storage
from tmux import TmuxClient, TmuxError

logger = logging.getLogger(__name__)

Renderer = Callable[[List[BoardColumn]], None]


def focused_window_id(server: TmuxServer, own_window: Optional[str] = None) -> Optional[str]:
    """Active window of the first attached session, unless that is tukan itself."""
    for session in server.sessions:
        if not session.attached:
            continue
        for window in session.windows:
            if window.active:
                return None if window.id == own_window else window.id
    return None


class BoardMonitor:
    def __init__(
        self,
        client: TmuxClient,
        storage: Storage,
        session_name: str,
        settings: Settings,
        self_pane_id: Optional[str] = None,
        renderer: Optional[Renderer] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.storage = storage
        self.session_name = session_name
        self.settings = settings
        self.self_pane_id = self_pane_id
        self.renderer = renderer
        self.clock = clock

        self.state: SessionState = storage.load_session(session_name)
        self.server = TmuxServer(server_name=client.server_name or "")
        self.activity: ActivityMap = {}
        self.previews: Dict[str, List[str]] = {}
        self.pane_hashes: Dict[str, str] = {}
        self._restored = False
        self._stop = asyncio.Event()

    # -------------------- persistence --------------------
    def _persist(self) -> None:
        try:
            self.storage.save_session(self.session_name, self.state)
        except OSError as exc:
            logger.warning("Could not save board state: %s", exc)

    # -------------------- ticks --------------------
    async def refresh_topology(self) -> bool:
        """One topology tick. Returns True when the card store changed."""
        self.server = await self.client.get_server(self.session_name)
        board = reconcile(self.state.board, live_window_ids(self.server), self.clock())
        changed = board is not self.state.board
        if changed:
            self.state.board = board
            self._persist()
        self.redraw()
        return changed

    async def refresh_activity(self) -> bool:
        """One activity tick. Returns True when anything was persisted."""
        pane_to_window = pane_window_map(self.server)
        if not pane_to_window:
            return False
        contents = await self.client.capture_panes(pane_to_window.keys())
        now = self.clock()

        if not self._restored:
            fresh = compute_pane_hashes(contents)
            times = restore_change_times(
                self.state.last_change_times, self.state.pane_hashes, fresh, pane_to_window, now,
            )
            self.activity = seed_activity(times)
            self.pane_hashes = fresh
            self._restored = True

        own_window = self_window_id(self.server, self.self_pane_id)
        tick = poll_activity(
            self.pane_hashes, self.activity, contents, pane_to_window,
            focused_window_id(self.server, own_window), now,
        )
        self.pane_hashes = tick.pane_hashes
        self.activity = tick.activity
        self.previews = build_preview_map(contents, pane_to_window)

        board = self.state.board
        threshold = effective_idle_threshold(board.idle_threshold_ms, self.settings)
        times = last_change_times(self.activity)
        promotions = get_idle_promotions(board.cards, times, now, threshold)
        demotions = get_review_demotions(board.cards, tick.changed_windows)
        board = set_column(board, promotions, COL_REVIEW)
        board = set_column(board, demotions, COL_IN_PROGRESS)
        for cid in promotions:
            logger.info("Promoted %s to Review (idle)", cid[:8])
        for cid in demotions:
            logger.info("Demoted %s to In Progress (active)", cid[:8])

        changed = (
            board is not self.state.board
            or times != self.state.last_change_times
            or self.pane_hashes != self.state.pane_hashes
        )
        if changed:
            self.state.board = board
            self.state.last_change_times = times
            self.state.pane_hashes = dict(self.pane_hashes)
            self._persist()
        self.redraw()
        return changed

    def columns(self) -> List[BoardColumn]:
        return derive(self.server, self.state.board, self.self_pane_id,
                      self.activity, self.previews, self.clock())

    def redraw(self) -> None:
        if self.renderer is not None:
            self.renderer(self.columns())

    # -------------------- loops --------------------
    async def _every(self, interval: float, tick: Callable[[], object]) -> None:
        while not self._stop.is_set():
            try:
                await tick()
            except TmuxError as exc:
                logger.warning("tmux call failed: %s", exc)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        await self.refresh_topology()
        await asyncio.gather(
            self._every(self.settings.topology_interval, self.refresh_topology),
            self._every(self.settings.activity_interval, self.refresh_activity),
        )
