"""tmux process-tree adapter.

Lists sessions, windows and panes with tab-separated -F formats and nests
them into an immutable TmuxServer snapshot. All subprocess calls go through
asyncio so the board's two poll loops never block each other. The server
name (the -L socket) is always passed in explicitly.
"""
from __future__ import annotations
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
import asyncio
import logging
import os

from models import TmuxPane, TmuxServer, TmuxSession, TmuxWindow

logger = logging.getLogger(__name__)

FIELD_SEP = "\t"

SESSION_FORMAT = ("#{session_id}", "#{session_name}", "#{session_attached}")
WINDOW_FORMAT = ("#{session_id}", "#{window_id}", "#{window_index}", "#{window_name}", "#{window_active}")
PANE_FORMAT = (
    "#{window_id}", "#{pane_id}", "#{pane_index}", "#{pane_active}",
    "#{pane_current_command}", "#{pane_pid}", "#{pane_current_path}",
    "#{pane_width}", "#{pane_height}",
)


class TmuxError(Exception):
    """A tmux invocation failed (non-zero exit or tmux missing)."""


def _lines(output: str) -> List[str]:
    if not output.strip():
        return []
    return [line for line in output.strip().split("\n") if line]


def _int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _fields(line: str, count: int) -> List[str]:
    parts = line.split(FIELD_SEP)
    return parts + [""] * (count - len(parts))


def parse_sessions(output: str) -> List[TmuxSession]:
    sessions: List[TmuxSession] = []
    for line in _lines(output):
        sid, name, attached = _fields(line, 3)[:3]
        sessions.append(TmuxSession(id=sid, name=name, attached=attached not in ("", "0")))
    return sessions


def parse_windows(output: str) -> List[Tuple[str, TmuxWindow]]:
    """(session id, window) pairs."""
    windows: List[Tuple[str, TmuxWindow]] = []
    for line in _lines(output):
        sid, wid, index, name, active = _fields(line, 5)[:5]
        windows.append((sid, TmuxWindow(id=wid, index=_int(index), name=name, active=active == "1")))
    return windows


def parse_panes(output: str) -> List[Tuple[str, TmuxPane]]:
    """(window id, pane) pairs."""
    panes: List[Tuple[str, TmuxPane]] = []
    for line in _lines(output):
        wid, pid_, index, active, command, pid, cwd, width, height = _fields(line, 9)[:9]
        panes.append((wid, TmuxPane(
            id=pid_, index=_int(index), active=active == "1", command=command,
            pid=_int(pid), working_dir=cwd, width=_int(width), height=_int(height),
        )))
    return panes


def assemble_server(
    server_name: str,
    sessions: Iterable[TmuxSession],
    windows: Iterable[Tuple[str, TmuxWindow]],
    panes: Iterable[Tuple[str, TmuxPane]],
) -> TmuxServer:
    panes_by_window: Dict[str, List[TmuxPane]] = {}
    for wid, pane in panes:
        panes_by_window.setdefault(wid, []).append(pane)

    windows_by_session: Dict[str, List[TmuxWindow]] = {}
    for sid, window in windows:
        nested = TmuxWindow(window.id, window.index, window.name, window.active,
                            tuple(panes_by_window.get(window.id, ())))
        windows_by_session.setdefault(sid, []).append(nested)

    return TmuxServer(
        server_name=server_name,
        sessions=tuple(
            TmuxSession(s.id, s.name, s.attached, tuple(windows_by_session.get(s.id, ())))
            for s in sessions
        ),
    )


def detect_server_name(env: Mapping[str, str]) -> Optional[str]:
    """Socket basename from $TMUX ("/tmp/tmux-1000/work,123,0" -> "work").

    Outside tmux there is no name and the default server is used.
    """
    tmux_env = env.get("TMUX")
    if not tmux_env:
        return None
    socket_path = tmux_env.split(",")[0]
    return os.path.basename(socket_path) or None


def server_args(server_name: Optional[str]) -> List[str]:
    return ["-L", server_name] if server_name else []


class TmuxClient:
    def __init__(self, server_name: Optional[str] = None, binary: str = "tmux"):
        self.server_name = server_name
        self.binary = binary

    async def run(self, args: List[str]) -> str:
        """Run tmux with args (server flag prepended) and return stdout."""
        full = server_args(self.server_name) + list(args)
        logger.debug("tmux %s", " ".join(full))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *full,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TmuxError(f"{self.binary} not found") from exc
        except OSError as exc:
            raise TmuxError(f"could not run {self.binary}: {exc}") from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            message = stderr.decode("utf-8", "replace").strip() or f"exit status {proc.returncode}"
            raise TmuxError(f"tmux {args[0] if args else ''}: {message}")
        return stdout.decode("utf-8", "replace")

    async def get_server(self, session_name: Optional[str] = None) -> TmuxServer:
        """Snapshot of the server, optionally scoped to one session.

        No running server (or no such session) yields an empty snapshot.
        """
        window_target = ["-t", session_name] if session_name else ["-a"]
        pane_target = ["-s", "-t", session_name] if session_name else ["-a"]
        try:
            sessions_raw, windows_raw, panes_raw = await asyncio.gather(
                self.run(["list-sessions", "-F", FIELD_SEP.join(SESSION_FORMAT)]),
                self.run(["list-windows", *window_target, "-F", FIELD_SEP.join(WINDOW_FORMAT)]),
                self.run(["list-panes", *pane_target, "-F", FIELD_SEP.join(PANE_FORMAT)]),
            )
        except TmuxError as exc:
            logger.debug("tmux listing failed: %s", exc)
            return TmuxServer(server_name=self.server_name or "")
        server = assemble_server(
            self.server_name or "",
            parse_sessions(sessions_raw),
            parse_windows(windows_raw),
            parse_panes(panes_raw),
        )
        if session_name:
            server = TmuxServer(server.server_name, tuple(s for s in server.sessions if s.name == session_name))
        return server

    async def capture_pane(self, target: str) -> str:
        return await self.run(["capture-pane", "-p", "-t", target])

    async def capture_panes(self, pane_ids: Iterable[str]) -> Dict[str, str]:
        """Capture panes concurrently; panes that vanished meanwhile are left out."""
        ids = list(pane_ids)
        results = await asyncio.gather(*(self.capture_pane(p) for p in ids), return_exceptions=True)
        contents: Dict[str, str] = {}
        for pane_id, result in zip(ids, results):
            if isinstance(result, TmuxError):
                logger.debug("capture of %s skipped: %s", pane_id, result)
                continue
            if isinstance(result, BaseException):
                raise result
            contents[pane_id] = result
        return contents

    async def current_session(self, pane_id: Optional[str]) -> Optional[str]:
        if not pane_id:
            return None
        try:
            out = await self.run(["display-message", "-t", pane_id, "-p", "#{session_name}"])
        except TmuxError:
            return None
        return out.strip() or None

    async def kill_window(self, window_id: str) -> None:
        await self.run(["kill-window", "-t", window_id])

    async def rename_window(self, window_id: str, name: str) -> None:
        await self.run(["rename-window", "-t", window_id, name])

    async def send_keys(self, window_id: str, text: str, enter: bool = True) -> None:
        await self.run(["send-keys", "-t", window_id, "-l", text])
        if enter:
            await self.run(["send-keys", "-t", window_id, "Enter"])
