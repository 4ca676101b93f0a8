import unittest

from models import BoardCard, BoardColumn
from render import (
    IND_ACTIVE, IND_ACTIVITY, IND_CLOSED, IND_LIVE, MIN_COL_WIDTH, SEP, SPINNER_FRAME,
    card_lines, compute_column_widths, format_idle_time, indicator_for, render_board, visible_len,
)


def bc(name="Task", **kw):
    fields = dict(card_id="abcdef123456", window_id=None, display_id="abcdef12", session_name="s",
                  name=name, command="shell", working_dir="/")
    fields.update(kw)
    return BoardCard(**fields)


class IndicatorTests(unittest.TestCase):
    def test_priority(self):
        self.assertEqual(indicator_for(bc(closed=True, window_id="@1", spinning=True)), IND_CLOSED)
        self.assertEqual(indicator_for(bc(window_id="@1", spinning=True, has_activity=True)), SPINNER_FRAME)
        self.assertEqual(indicator_for(bc(window_id="@1", has_activity=True, active=True)), IND_ACTIVITY)
        self.assertEqual(indicator_for(bc(window_id="@1", active=True)), IND_ACTIVE)
        self.assertEqual(indicator_for(bc(window_id="@1")), IND_LIVE)
        self.assertEqual(indicator_for(bc()), "")

    def test_idle_format(self):
        self.assertEqual(format_idle_time(42), "idle 42s")
        self.assertEqual(format_idle_time(180), "idle 3m")
        self.assertEqual(format_idle_time(7300), "idle 2h")


class LayoutTests(unittest.TestCase):
    def test_widths_fill_terminal(self):
        columns = [BoardColumn("1", "Todo"), BoardColumn("2", "Doing")]
        widths = compute_column_widths(columns, 80)
        self.assertEqual(sum(widths.values()) + len(SEP), 80)

    def test_widths_never_below_minimum(self):
        columns = [BoardColumn(str(i), "Col") for i in range(5)]
        widths = compute_column_widths(columns, 40)
        self.assertTrue(all(w >= MIN_COL_WIDTH for w in widths.values()))

    def test_card_lines_idle_suffix_and_preview(self):
        card = bc(window_id="@1", idle_time=42, preview=["$ make", "ok"])
        text = "\n".join(card_lines(card, "2", 40))
        self.assertIn("Task", text)
        self.assertIn("abcdef12 idle 42s", text)
        self.assertIn("ok", text)

    def test_no_preview_while_spinning(self):
        card = bc(window_id="@1", idle_time=42, spinning=True, preview=["secret"])
        self.assertNotIn("secret", "\n".join(card_lines(card, "2", 40)))

    def test_long_titles_wrap(self):
        lines = card_lines(bc(name="a very long card title that needs wrapping"), "1", 20)
        self.assertGreater(len(lines), 1)
        self.assertTrue(all(visible_len(line) <= 20 for line in lines))

    def test_render_board_header_and_empty(self):
        columns = [BoardColumn("1", "Todo", [bc()]), BoardColumn("2", "Doing")]
        lines = render_board(columns, 60)
        self.assertIn("Todo (1)", lines[0])
        self.assertIn("Doing (0)", lines[0])
        self.assertIn("(empty)", "\n".join(lines))
        self.assertEqual(render_board([], 60), [])


if __name__ == "__main__":
    unittest.main()
