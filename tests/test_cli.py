import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from click.testing import CliRunner

import cli as cli_module
from models import (
    BoardConfig, Card, COL_DONE, COL_IN_PROGRESS, COL_REVIEW, COL_TODO, TmuxPane, TmuxServer, TmuxSession, TmuxWindow,
)
from storage import SessionState, Storage
from tmux import TmuxError


class FakeTmux:
    """In-memory stand-in for TmuxClient: one server, windows keyed by id."""

    def __init__(self):
        self.server_name = None
        self.windows = {"@0": ("work", "shell", "$ ")}
        self.calls = []
        self.next_id = 1

    async def get_server(self, session_name=None):
        sessions = {}
        for index, (wid, (sname, name, _)) in enumerate(self.windows.items()):
            if session_name and sname != session_name:
                continue
            pane = TmuxPane(f"%{wid[1:]}", 0, True, "zsh", 1, "/repo")
            sessions.setdefault(sname, []).append(TmuxWindow(wid, index, name, False, (pane,)))
        return TmuxServer("", tuple(
            TmuxSession(f"${i}", sname, i == 0, tuple(ws)) for i, (sname, ws) in enumerate(sessions.items())
        ))

    async def current_session(self, pane_id):
        return None

    async def run(self, args):
        self.calls.append(list(args))
        if args[0] in ("new-window", "new-session"):
            wid = f"@{self.next_id}"
            self.next_id += 1
            session = args[args.index("-t" if args[0] == "new-window" else "-s") + 1]
            self.windows[wid] = (session, args[args.index("-n") + 1], "")
            return wid + "\n"
        return ""

    async def capture_pane(self, target):
        if target not in self.windows:
            raise TmuxError(f"can't find window: {target}")
        return self.windows[target][2]

    async def capture_panes(self, pane_ids):
        return {p: self.windows[f"@{p[1:]}"][2] for p in pane_ids if f"@{p[1:]}" in self.windows}

    async def kill_window(self, window_id):
        self.calls.append(["kill-window", "-t", window_id])
        self.windows.pop(window_id, None)

    async def rename_window(self, window_id, name):
        self.calls.append(["rename-window", "-t", window_id, name])

    async def send_keys(self, window_id, text, enter=True):
        self.calls.append(["send-keys", window_id, text, enter])


class CliTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.fake = FakeTmux()
        patcher = mock.patch.object(cli_module, "TmuxClient", lambda server_name=None: self.fake)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.runner = CliRunner(env={
            "TUKAN_STATE_DIR": self.tmp.name,
            "TMUX": None,
            "TMUX_PANE": None,
            "TUKAN_IDLE_MS": None,
        })
        self.storage = Storage.in_dir(Path(self.tmp.name))

    def invoke(self, *args, session="work"):
        argv = (["--session", session] if session else []) + list(args)
        return self.runner.invoke(cli_module.cli, argv, catch_exceptions=False)

    def board(self, session="work"):
        return self.storage.load_session(session).board

    def add(self, name, *extra):
        return self.add_to("work", name, *extra)

    def add_to(self, session, name, *extra):
        result = self.invoke("add", name, "--dir", "/repo", *extra, session=session)
        self.assertEqual(result.exit_code, 0, result.output)
        return next(c for c in self.board(session).cards.values() if c.name == name)

    def test_add_and_list(self):
        created = self.invoke("add", "Fix login", "-d", "Users get logged out", "--dir", "/repo")
        card = next(iter(self.board().cards.values()))
        self.assertIn(f'Created card "Fix login" ({card.id[:8]})', created.output)
        self.assertEqual(card.description, "Users get logged out")
        result = self.invoke("list")
        self.assertEqual(result.exit_code, 0)
        self.assertIn("Todo:", result.output)
        self.assertIn(f"{card.id[:8]}  Fix login", result.output)
        self.assertEqual(card.column_id, COL_TODO)
        self.assertEqual(card.dir, "/repo")

    def test_list_json_and_column_filter(self):
        self.add("Fix login")
        payload = json.loads(self.invoke("list", "--json").output)
        self.assertEqual([c["title"] for c in payload], ["Unassigned", "Todo", "In Progress", "Review"])
        self.assertEqual(payload[1]["cards"][0]["name"], "Fix login")
        self.assertFalse(payload[1]["cards"][0]["live"])
        bad = self.invoke("list", "--column", "blocked")
        self.assertEqual(bad.exit_code, 2)

    def test_list_keeps_card_with_stale_column(self):
        stray = Card(id="deadbeef01", name="Stray", session_name="work", created_at=1, column_id="77")
        self.storage.save_session("work", SessionState(board=BoardConfig(cards={stray.id: stray})))
        result = self.invoke("list")
        self.assertIn("Unassigned:", result.output)
        self.assertIn("deadbeef  Stray", result.output)

    def test_start_opens_window_and_moves_card(self):
        self.add("Fix login", "-d", "Users get logged out")
        result = self.invoke("start", "fix login")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn('Started "Fix login" → window @1', result.output)

        new_window = self.fake.calls[0]
        self.assertEqual(new_window[0], "new-window")
        self.assertEqual(new_window[new_window.index("-n") + 1], "fix-login")
        self.assertIn(["send-keys", "-t", "@1", "-l", "# Users get logged out"], self.fake.calls)

        card = next(iter(self.board().cards.values()))
        self.assertEqual((card.window_id, card.column_id, card.closed_at), ("@1", COL_IN_PROGRESS, None))

        again = self.invoke("start", "fix login")
        self.assertEqual(again.exit_code, 1)
        self.assertIn("already started", again.output)

    def test_start_opens_session_when_only_another_is_live(self):
        class StrictTmux(FakeTmux):
            async def run(self, args):
                if args[0] == "new-window":
                    target = args[args.index("-t") + 1]
                    if target not in {s for s, _, _ in self.windows.values()}:
                        raise TmuxError(f"can't find session: {target}")
                return await super().run(args)

        self.fake = StrictTmux()
        self.add_to("proj", "Task")
        result = self.invoke("start", "task", session="proj")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(self.fake.calls[-1][0], "new-session")
        self.assertEqual(self.fake.windows["@1"][0], "proj")
        started = next(iter(self.board("proj").cards.values()))
        self.assertEqual((started.window_id, started.column_id), ("@1", COL_IN_PROGRESS))

    def test_start_json(self):
        self.add("Fix login", "--command", "claude")
        result = self.invoke("start", "fix", "--json")
        self.assertEqual(json.loads(result.output)["windowId"], "@1")
        self.assertEqual(self.fake.calls[0][-1], "claude")

    def test_ambiguous_query_exits_1(self):
        self.add("Fix login")
        self.add("Fix logout")
        result = self.invoke("show", "fix")
        self.assertEqual(result.exit_code, 1)
        self.assertIn('Ambiguous match for "fix"', result.output)

    def test_unknown_card(self):
        result = self.invoke("stop", "ghost")
        self.assertEqual(result.exit_code, 1)
        self.assertIn('No card found matching "ghost"', result.output)

    def test_lookup_falls_back_to_other_sessions(self):
        self.add("Deploy")
        result = self.invoke("show", "deploy", session=None)
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Name:        Deploy", result.output)
        self.assertIn("Status:      unstarted", result.output)

    def test_stop_and_resolve(self):
        self.add("Fix login")
        self.invoke("start", "fix login")
        result = self.invoke("stop", "fix login")
        self.assertIn('Stopped "Fix login"', result.output)
        self.assertIn(["kill-window", "-t", "@1"], self.fake.calls)
        card = next(iter(self.board().cards.values()))
        self.assertIsNone(card.window_id)
        self.assertIsNotNone(card.closed_at)
        self.assertIn("Status:      closed", self.invoke("show", "fix login").output)

        result = self.invoke("resolve", "fix login")
        self.assertIn('Resolved "Fix login" → Done', result.output)
        self.assertEqual(next(iter(self.board().cards.values())).column_id, COL_DONE)
        self.assertNotIn("Fix login", self.invoke("list").output)
        self.assertIn("Fix login", self.invoke("list", "--all").output)

    def test_move(self):
        self.add("Fix login")
        self.assertIn('Moved "Fix login" → In Progress', self.invoke("move", "fix login", "right").output)
        self.invoke("move", "fix login", "left")
        self.assertIn('"Fix login" stays in Todo', self.invoke("move", "fix login", "left").output)

    def test_edit_flags_rename_live_window(self):
        self.add("Fix login")
        self.invoke("start", "fix login")
        result = self.invoke("edit", "fix login", "--name", "Fix auth", "--custom-command", "make dev")
        self.assertIn('Updated "Fix auth"', result.output)
        card = next(iter(self.board().cards.values()))
        self.assertEqual((card.name, card.command, card.custom_command), ("Fix auth", "custom", "make dev"))
        self.assertIn(["rename-window", "-t", "@1", "Fix auth"], self.fake.calls)

    def test_edit_through_editor(self):
        self.add("Fix login")

        def fake_edit(text, **kwargs):
            return text.replace("Name: Fix login", "Name: Fix login flow").replace(
                "## Acceptance Criteria\n", "## Acceptance Criteria\nNo logouts\n")

        with mock.patch.object(cli_module.click, "edit", side_effect=fake_edit):
            result = self.invoke("edit", "fix login")
        self.assertEqual(result.exit_code, 0, result.output)
        card = next(iter(self.board().cards.values()))
        self.assertEqual(card.name, "Fix login flow")
        self.assertEqual(card.acceptance_criteria, "No logouts")

    def test_edit_cancelled(self):
        self.add("Fix login")
        with mock.patch.object(cli_module.click, "edit", return_value=None):
            result = self.invoke("edit", "fix login")
        self.assertIn("No changes saved.", result.output)

    def test_peek_and_send(self):
        self.add("Fix login")
        self.invoke("start", "fix login")
        self.fake.windows["@1"] = ("work", "fix-login", "line 1\nline 2\nline 3\n\n\n")
        self.assertEqual(self.invoke("peek", "fix login").output, "line 1\nline 2\nline 3\n")
        self.assertEqual(self.invoke("peek", "fix login", "--tail", "1").output, "line 3\n")

        result = self.invoke("send", "fix login", "npm", "test", "--no-enter")
        self.assertIn('Sent to "Fix login"', result.output)
        self.assertIn(["send-keys", "@1", "npm test", False], self.fake.calls)

    def test_peek_requires_window(self):
        self.add("Fix login")
        result = self.invoke("peek", "fix login")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("has no live window", result.output)

    def test_refresh_promotes_idle_card(self):
        self.add("Fix login")
        self.invoke("start", "fix login")
        self.assertIn("Board is up to date.", self.invoke("refresh").output)

        state = self.storage.load_session("work")
        state.last_change_times = {wid: 0 for wid in state.last_change_times}
        self.storage.save_session("work", state)
        result = self.invoke("refresh")
        self.assertIn('Promoted "Fix login" → Review (idle)', result.output)
        self.assertEqual(next(iter(self.board().cards.values())).column_id, COL_REVIEW)

        self.fake.windows["@1"] = ("work", "fix-login", "new output")
        result = self.invoke("refresh")
        self.assertIn('Demoted "Fix login" → In Progress (active)', result.output)

    def test_sessions(self):
        self.add("Fix login")
        self.storage.save_session("archive", SessionState())
        result = self.invoke("sessions", session=None)
        self.assertIn("  archive  no tmux session, 0 cards", result.output)
        self.assertIn("  work  1 window, attached, 1 card", result.output)

    def test_board_once(self):
        self.add("Fix login")
        result = self.invoke("board")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Todo (1)", result.output)
        self.assertIn("Fix login", result.output)


if __name__ == "__main__":
    unittest.main()
