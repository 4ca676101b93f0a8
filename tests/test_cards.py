import unittest

from cards import (
    AMBIGUOUS, FOUND, NOT_FOUND, add_card, column_id_from_name, column_name_from_id,
    create_card, edit_card, mark_resolved, mark_started, mark_stopped, move_card,
    resolve_card, resolve_card_across_sessions, set_column,
)
from models import (
    BoardConfig, Card, COL_DONE, COL_IN_PROGRESS, COL_REVIEW, COL_TODO, COL_UNASSIGNED,
)


def card(cid, name, **kw):
    kw.setdefault("session_name", "work")
    kw.setdefault("created_at", 1)
    return Card(id=cid, name=name, **kw)


def board(*cards):
    return BoardConfig(cards={c.id: c for c in cards})


class ResolveCardTests(unittest.TestCase):
    def setUp(self):
        self.cards = {
            "aaaa1111": card("aaaa1111", "Fix login"),
            "aaaa2222": card("aaaa2222", "Fix logout"),
        }

    def test_exact_id_wins(self):
        result = resolve_card(self.cards, "aaaa1111")
        self.assertEqual(result.status, FOUND)
        self.assertEqual(result.card_id, "aaaa1111")

    def test_shared_prefix_is_ambiguous(self):
        result = resolve_card(self.cards, "aaaa")
        self.assertEqual(result.status, AMBIGUOUS)
        self.assertIn('Ambiguous match for "aaaa"', result.error)
        self.assertIn("aaaa1111 Fix login", result.error)
        self.assertIn("aaaa2222 Fix logout", result.error)

    def test_id_prefix_beats_exact_name(self):
        cards = {
            "beef1234": card("beef1234", "Deploy"),
            "c0ffee99": card("c0ffee99", "beef"),
        }
        result = resolve_card(cards, "beef")
        self.assertEqual(result.status, FOUND)
        self.assertEqual(result.card_id, "beef1234")

    def test_ambiguous_prefix_does_not_fall_back_to_name(self):
        cards = dict(self.cards, c0ffee99=card("c0ffee99", "aaaa"))
        result = resolve_card(cards, "aaaa")
        self.assertEqual(result.status, AMBIGUOUS)
        self.assertNotIn("c0ffee99", result.error)

    def test_exact_name_case_insensitive(self):
        result = resolve_card(self.cards, "fix login")
        self.assertTrue(result.ok)
        self.assertEqual(result.card_id, "aaaa1111")

    def test_short_prefix_not_treated_as_id(self):
        result = resolve_card(self.cards, "aaa")
        self.assertEqual(result.status, NOT_FOUND)
        self.assertEqual(result.error, 'No card found matching "aaa"')

    def test_substring_match(self):
        cards = {"b1": card("b1", "Refactor parser"), "b2": card("b2", "Write docs")}
        self.assertEqual(resolve_card(cards, "PARSE").card_id, "b1")

    def test_substring_ambiguous(self):
        self.assertEqual(resolve_card(self.cards, "fix").status, AMBIGUOUS)

    def test_empty_store(self):
        self.assertEqual(resolve_card({}, "anything").status, NOT_FOUND)


class ResolveAcrossSessionsTests(unittest.TestCase):
    def test_unique_match_reports_session(self):
        result = resolve_card_across_sessions({
            "a": {"x1": card("x1", "Deploy")},
            "b": {"y1": card("y1", "Review PR")},
        }, "review")
        self.assertTrue(result.ok)
        self.assertEqual(result.session_name, "b")
        self.assertEqual(result.card_id, "y1")

    def test_same_name_in_two_sessions_is_ambiguous(self):
        result = resolve_card_across_sessions({
            "a": {"x1": card("x1", "Deploy")},
            "b": {"y1": card("y1", "Deploy")},
        }, "deploy")
        self.assertEqual(result.status, AMBIGUOUS)
        self.assertIn("[a]", result.error)
        self.assertIn("[b]", result.error)

    def test_nothing_anywhere(self):
        result = resolve_card_across_sessions({"a": {}}, "ghost")
        self.assertEqual(result.status, NOT_FOUND)


class LifecycleTests(unittest.TestCase):
    def test_create_card_defaults(self):
        c = create_card("Write docs", "work", now=42)
        self.assertEqual(c.column_id, COL_TODO)
        self.assertEqual(c.command, "shell")
        self.assertEqual(c.created_at, 42)
        self.assertIsNone(c.window_id)
        self.assertEqual(len(c.id), 36)

    def test_create_card_drops_path_without_worktree(self):
        c = create_card("x", "work", worktree=False, worktree_path="../elsewhere")
        self.assertIsNone(c.worktree_path)

    def test_add_card_does_not_mutate(self):
        empty = BoardConfig()
        c = create_card("x", "work")
        added = add_card(empty, c)
        self.assertEqual(empty.cards, {})
        self.assertIs(added.cards[c.id], c)

    def test_start_scenario(self):
        store = board(card("c1", "Task", column_id=COL_TODO))
        started = mark_started(store, "c1", "@5", now=100)
        c1 = started.cards["c1"]
        self.assertEqual(c1.window_id, "@5")
        self.assertEqual(c1.column_id, COL_IN_PROGRESS)
        self.assertIsNone(c1.closed_at)
        self.assertEqual(c1.started_at, 100)
        self.assertEqual(store.cards["c1"].column_id, COL_TODO)

    def test_restart_of_resolved_card(self):
        store = board(card("c1", "Task", column_id=COL_DONE, started_at=1, closed_at=2))
        c1 = mark_started(store, "c1", "@9", now=3).cards["c1"]
        self.assertEqual((c1.window_id, c1.column_id, c1.closed_at), ("@9", COL_IN_PROGRESS, None))

    def test_stop_keeps_column(self):
        store = board(card("c1", "Task", column_id=COL_REVIEW, window_id="@1"))
        c1 = mark_stopped(store, "c1", now=7).cards["c1"]
        self.assertIsNone(c1.window_id)
        self.assertEqual(c1.closed_at, 7)
        self.assertEqual(c1.column_id, COL_REVIEW)

    def test_resolve_moves_to_done(self):
        store = board(card("c1", "Task", column_id=COL_IN_PROGRESS, window_id="@1"))
        c1 = mark_resolved(store, "c1", now=9).cards["c1"]
        self.assertEqual((c1.column_id, c1.window_id, c1.closed_at), (COL_DONE, None, 9))

    def test_unknown_id_returns_same_object(self):
        store = board(card("c1", "Task"))
        self.assertIs(mark_started(store, "nope", "@1"), store)
        self.assertIs(mark_stopped(store, "nope"), store)
        self.assertIs(mark_resolved(store, "nope"), store)
        self.assertIs(edit_card(store, "nope", name="x"), store)


class EditCardTests(unittest.TestCase):
    def test_only_supplied_fields_change(self):
        store = board(card("c1", "Old", description="keep"))
        c1 = edit_card(store, "c1", name="New", description=None).cards["c1"]
        self.assertEqual(c1.name, "New")
        self.assertEqual(c1.description, "keep")

    def test_leaving_custom_drops_custom_text(self):
        store = board(card("c1", "x", command="custom", custom_command="make test"))
        c1 = edit_card(store, "c1", command="claude").cards["c1"]
        self.assertEqual(c1.command, "claude")
        self.assertIsNone(c1.custom_command)

    def test_disabling_worktree_drops_path(self):
        store = board(card("c1", "x", worktree=True, worktree_path="../wt"))
        c1 = edit_card(store, "c1", worktree=False).cards["c1"]
        self.assertFalse(c1.worktree)
        self.assertIsNone(c1.worktree_path)

    def test_no_fields_is_noop(self):
        store = board(card("c1", "x"))
        self.assertIs(edit_card(store, "c1"), store)

    def test_unknown_field_rejected(self):
        store = board(card("c1", "x"))
        with self.assertRaises(TypeError):
            edit_card(store, "c1", window_id="@1")


class ColumnTests(unittest.TestCase):
    def test_set_column_skips_unknown_and_noop(self):
        store = board(card("c1", "x", column_id=COL_REVIEW))
        self.assertIs(set_column(store, ["c1"], COL_REVIEW), store)
        self.assertIs(set_column(store, ["ghost"], COL_DONE), store)
        moved = set_column(store, ["c1", "ghost"], COL_IN_PROGRESS)
        self.assertEqual(moved.cards["c1"].column_id, COL_IN_PROGRESS)

    def test_move_right_and_left(self):
        store = board(card("c1", "x", column_id=COL_TODO))
        right = move_card(store, "c1", "right")
        self.assertEqual(right.cards["c1"].column_id, COL_IN_PROGRESS)
        self.assertEqual(move_card(right, "c1", "left").cards["c1"].column_id, COL_TODO)

    def test_move_stops_at_edges(self):
        todo = board(card("c1", "x", column_id=COL_TODO))
        done = board(card("c1", "x", column_id=COL_DONE))
        self.assertIs(move_card(todo, "c1", "left"), todo)
        self.assertIs(move_card(done, "c1", "right"), done)

    def test_move_from_stale_column_treated_as_todo(self):
        store = board(card("c1", "x", column_id="99"))
        self.assertEqual(move_card(store, "c1", "right").cards["c1"].column_id, COL_IN_PROGRESS)

    def test_move_bad_direction(self):
        with self.assertRaises(ValueError):
            move_card(board(card("c1", "x")), "c1", "up")

    def test_column_names(self):
        self.assertEqual(column_id_from_name("In Progress"), COL_IN_PROGRESS)
        self.assertEqual(column_id_from_name(" ip "), COL_IN_PROGRESS)
        self.assertEqual(column_id_from_name("unassigned"), COL_UNASSIGNED)
        self.assertIsNone(column_id_from_name("blocked"))
        self.assertEqual(column_name_from_id(COL_REVIEW), "Review")
        self.assertEqual(column_name_from_id("42"), "Unknown")


if __name__ == "__main__":
    unittest.main()
