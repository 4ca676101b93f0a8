"""Command-line interface for tukan.

Every command resolves its session the same way: --session, else the tmux
session hosting $TMUX_PANE, else the basename of the working directory.
Card arguments accept an id, an id prefix (4+ chars) or a name fragment; a
lookup that misses in the current session is retried across all sessions.

Column ids stay "0".."4" internally while users type names (todo, review,
in-progress, ...).
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple
import asyncio
import json
import logging
import os
import signal
import subprocess
import sys

import click

from activity import (
    compute_pane_hashes, get_idle_promotions, get_review_demotions_by_time,
    restore_change_times, seed_activity,
)
from board import derive, live_window_ids, pane_window_map, reconcile
from cards import (
    add_card, column_id_from_name, column_name_from_id, create_card, edit_card,
    mark_resolved, mark_started, mark_stopped, move_card, resolve_card,
    resolve_card_across_sessions, set_column,
)
from config import Settings, effective_idle_threshold, load_settings
from launch import (
    GitError, WindowSpec, build_new_session_args, build_new_window_args,
    build_send_keys_args, build_worktree_args, build_worktree_checkout_args,
    build_worktree_merge_args, build_worktree_remove_args, command_template,
    resolve_switch_args, run_git, sanitize_branch_name,
)
from models import (
    BoardConfig, Card, TmuxServer, COL_DONE, COL_IN_PROGRESS, COL_REVIEW,
    CUSTOM_COMMAND, DEFAULT_COLUMNS, now_ms,
)
from monitor import BoardMonitor
from render import display, enter_alt_screen, leave_alt_screen, redraw
from storage import SessionState, Storage, card_to_dict
from template import TemplateValues, build_card_template, parse_card_template
from tmux import TmuxClient, TmuxError, detect_server_name
from watch import StreamPrinter, strip_trailing_blanks, watch_card_pane

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def warn(message: str) -> None:
    logger.debug("warning: %s", message)
    click.echo(f"Warning: {message}", err=True)


def _run(coro):
    return asyncio.run(coro)


@dataclass
class SessionContext:
    session_name: str
    state: SessionState
    server: TmuxServer
    reconciled: bool = False

    @property
    def board(self) -> BoardConfig:
        return self.state.board

    @board.setter
    def board(self, value: BoardConfig) -> None:
        self.state.board = value


class App:
    """Per-invocation wiring: settings, store, tmux client and session scope."""

    def __init__(self, settings: Settings, session_flag: Optional[str], env: Mapping[str, str]):
        self.settings = settings
        self.session_flag = session_flag
        self.env = env
        self.server_name = detect_server_name(env)
        self.client = TmuxClient(self.server_name)
        self.storage = Storage.in_dir(settings.state_dir)

    async def detect_session(self) -> str:
        if self.session_flag:
            return self.session_flag
        if self.env.get("TMUX"):
            current = await self.client.current_session(self.env.get("TMUX_PANE"))
            if current:
                return current
        return os.path.basename(os.getcwd())

    async def load(self, session_name: Optional[str] = None) -> SessionContext:
        """Load a session's store, reconciled against its live windows."""
        name = session_name or await self.detect_session()
        server = await self.client.get_server(name)
        state = self.storage.load_session(name)
        if state.working_dir is None:
            state.working_dir = os.getcwd()
        board = reconcile(state.board, live_window_ids(server))
        reconciled = board is not state.board
        state.board = board
        return SessionContext(name, state, server, reconciled)

    def save(self, ctx: SessionContext) -> None:
        self.storage.save_session(ctx.session_name, ctx.state)

    async def resolve(self, query: str) -> Tuple[SessionContext, str, Card]:
        ctx = await self.load()
        result = resolve_card(ctx.board.cards, query)
        if result.ok:
            return ctx, result.card_id, result.card
        if self.session_flag:
            raise click.ClickException(result.error)

        cards_by_session = {name: s.board.cards for name, s in self.storage.load_all().items()}
        result = resolve_card_across_sessions(cards_by_session, query)
        if not result.ok:
            raise click.ClickException(result.error)
        ctx = await self.load(result.session_name)
        return ctx, result.card_id, ctx.board.cards[result.card_id]


pass_app = click.make_pass_decorator(App)


@click.group(invoke_without_command=True, context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-s", "--session", default=None, help="Session name (default: current tmux session, else cwd name).")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None,
              help="Logging level (default: $TUKAN_LOG_LEVEL or WARNING).")
@click.pass_context
def cli(ctx: click.Context, session: Optional[str], log_level: Optional[str]) -> None:
    """Kanban board for tmux windows."""
    settings = load_settings(os.environ)
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format=LOG_FORMAT, stream=sys.stderr)
    ctx.obj = App(settings, session, os.environ)
    if ctx.invoked_subcommand is None:
        ctx.invoke(show_board)


# -------------------- card lifecycle --------------------

@cli.command()
@click.argument("name")
@click.option("-d", "--description", default="", help="Card description.")
@click.option("--ac", default="", help="Acceptance criteria.")
@click.option("--dir", "dir_", default=None, help="Working directory.")
@click.option("--command", default=None, help="Command id (shell, claude, or a defined command).")
@click.option("--custom-command", default=None, help="Free-form command line (implies --command custom).")
@click.option("--worktree", is_flag=True, help="Run the card in its own git worktree.")
@click.option("--worktree-path", default=None, help="Worktree path relative to --dir.")
@pass_app
def add(app: App, name, description, ac, dir_, command, custom_command, worktree, worktree_path):
    """Create a new card in Todo."""
    async def go():
        ctx = await app.load()
        card = create_card(
            name=name,
            session_name=ctx.session_name,
            description=description,
            acceptance_criteria=ac,
            dir=dir_ or ctx.state.working_dir or os.getcwd(),
            command=CUSTOM_COMMAND if custom_command and not command else command,
            custom_command=custom_command,
            worktree=worktree,
            worktree_path=worktree_path,
        )
        ctx.board = add_card(ctx.board, card)
        app.save(ctx)
        click.echo(f'Created card "{card.name}" ({card.id[:8]})')
    _run(go())


async def _prepare_worktree(card: Card) -> str:
    plan = build_worktree_args(card.dir, card.name, card.worktree_path)
    if os.path.exists(plan.worktree_path):
        return plan.worktree_path
    try:
        await run_git(plan.args)
    except GitError as exc:
        # branch left over from an earlier start
        logger.debug("worktree add -b failed (%s); retrying with existing branch", exc)
        await run_git(build_worktree_checkout_args(plan))
    return plan.worktree_path


@cli.command()
@click.argument("card")
@click.option("-w", "--wait", is_flag=True, help="Stream pane changes until the window closes.")
@click.option("--json", "as_json", is_flag=True, help="JSON output (NDJSON events with --wait).")
@pass_app
def start(app: App, card, wait, as_json):
    """Start a card: open its tmux window and move it to In Progress."""
    async def go():
        ctx, cid, found = await app.resolve(card)
        if found.window_id and found.window_id in live_window_ids(ctx.server):
            raise click.ClickException(f'Card "{found.name}" is already started (window {found.window_id})')

        work_dir = found.dir
        if found.worktree:
            try:
                work_dir = await _prepare_worktree(found)
            except GitError as exc:
                raise click.ClickException(f"worktree setup failed: {exc}")

        template = command_template(found, ctx.board.commands)
        spec = WindowSpec(
            session_name=found.session_name or ctx.session_name,
            name=sanitize_branch_name(found.name),
            dir=work_dir,
            template=template,
            description=found.description,
            acceptance_criteria=found.acceptance_criteria,
        )
        target = await app.client.get_server(spec.session_name)
        args = build_new_window_args(spec) if target.sessions else build_new_session_args(spec)
        try:
            window_id = (await app.client.run(args)).strip()
        except TmuxError as exc:
            raise click.ClickException(str(exc))

        if not template and found.description:
            for keys in build_send_keys_args(window_id, found.description):
                try:
                    await app.client.run(keys)
                except TmuxError as exc:
                    warn(f"could not type description: {exc}")
                    break

        ctx.board = mark_started(ctx.board, cid, window_id)
        app.save(ctx)

        if not (wait and as_json):
            if as_json:
                click.echo(json.dumps({"cardId": cid, "windowId": window_id, "name": found.name}))
            else:
                click.echo(f'Started "{found.name}" → window {window_id}')

        if wait:
            abort = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, abort.set)
            try:
                await watch_card_pane(
                    app.client.capture_pane, window_id, cid, found.name,
                    StreamPrinter(click.echo, json_mode=as_json), abort,
                    interval=app.settings.watch_interval,
                )
            finally:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
    _run(go())


async def _kill_if_live(app: App, ctx: SessionContext, card: Card) -> None:
    if not card.window_id or card.window_id not in live_window_ids(ctx.server):
        return
    try:
        await app.client.kill_window(card.window_id)
    except TmuxError as exc:
        warn(f"could not close window {card.window_id}: {exc}")


@cli.command()
@click.argument("card")
@pass_app
def stop(app: App, card):
    """Stop a card: kill its window and mark it closed."""
    async def go():
        ctx, cid, found = await app.resolve(card)
        await _kill_if_live(app, ctx, found)
        ctx.board = mark_stopped(ctx.board, cid)
        app.save(ctx)
        click.echo(f'Stopped "{found.name}"')
    _run(go())


@cli.command()
@click.argument("card")
@click.option("--no-merge", is_flag=True, help="Skip worktree merge and removal.")
@click.option("-f", "--force", is_flag=True, help="Resolve even with uncommitted worktree changes.")
@pass_app
def resolve(app: App, card, no_merge, force):
    """Move a card to Done, closing its window and merging its worktree."""
    async def go():
        ctx, cid, found = await app.resolve(card)
        should_merge = found.worktree and not no_merge
        plan = build_worktree_args(found.dir, found.name, found.worktree_path) if should_merge else None

        if plan is not None:
            try:
                status = await run_git(["-C", plan.worktree_path, "status", "--porcelain"])
            except GitError as exc:
                logger.debug("Skipping dirty check for %s: %s", plan.worktree_path, exc)
                status = ""
            if status.strip():
                if not force:
                    raise click.ClickException(
                        "Worktree has uncommitted changes. Commit or stash first, or use --force to resolve anyway."
                    )
                warn("resolving with uncommitted worktree changes (--force)")

        await _kill_if_live(app, ctx, found)

        if plan is not None:
            try:
                await run_git(build_worktree_remove_args(found.dir, plan.worktree_path))
                for step in build_worktree_merge_args(found.dir, plan.branch):
                    await run_git(step)
                click.echo(f'Merged branch "{plan.branch}" and removed worktree')
            except GitError as exc:
                warn(f"worktree cleanup failed: {exc}")

        ctx.board = mark_resolved(ctx.board, cid)
        app.save(ctx)
        click.echo(f'Resolved "{found.name}" → Done')
    _run(go())


@cli.command()
@click.argument("card")
@click.option("--name", default=None, help="New name.")
@click.option("-d", "--description", default=None, help="New description.")
@click.option("--ac", default=None, help="New acceptance criteria.")
@click.option("--dir", "dir_", default=None, help="New working directory.")
@click.option("--command", default=None, help="New command id.")
@click.option("--custom-command", default=None, help="New free-form command (implies --command custom).")
@click.option("--worktree/--no-worktree", default=None, help="Toggle git worktree use.")
@click.option("--worktree-path", default=None, help="New worktree path.")
@pass_app
def edit(app: App, card, name, description, ac, dir_, command, custom_command, worktree, worktree_path):
    """Edit a card; opens $EDITOR on a card template when no flags are given."""
    async def go():
        ctx, cid, found = await app.resolve(card)
        fields = dict(
            name=name, description=description, acceptance_criteria=ac, dir=dir_,
            command=command, custom_command=custom_command, worktree=worktree,
            worktree_path=worktree_path,
        )
        if all(v is None for v in fields.values()):
            meta_only = found.window_id is not None
            edited = click.edit(build_card_template(TemplateValues.from_card(found), meta_only),
                                extension=".md", require_save=True)
            if edited is None:
                click.echo("No changes saved.")
                return
            fields = parse_card_template(edited, meta_only)
        elif custom_command is not None and command is None:
            fields["command"] = CUSTOM_COMMAND

        ctx.board = edit_card(ctx.board, cid, **fields)
        app.save(ctx)
        new_name = ctx.board.cards[cid].name
        if found.window_id and new_name != found.name and found.window_id in live_window_ids(ctx.server):
            try:
                await app.client.rename_window(found.window_id, new_name)
            except TmuxError as exc:
                warn(f"could not rename window: {exc}")
        click.echo(f'Updated "{new_name}"')
    _run(go())


@cli.command()
@click.argument("card")
@click.argument("direction", type=click.Choice(["left", "right"], case_sensitive=False))
@pass_app
def move(app: App, card, direction):
    """Move a card one column left or right."""
    async def go():
        ctx, cid, found = await app.resolve(card)
        board = move_card(ctx.board, cid, direction.lower())
        title = column_name_from_id(board.cards[cid].column_id)
        if board is ctx.board:
            click.echo(f'"{found.name}" stays in {title}')
            return
        ctx.board = board
        app.save(ctx)
        click.echo(f'Moved "{found.name}" → {title}')
    _run(go())


# -------------------- inspection --------------------

def _live_indicator(card: Card, live: set) -> str:
    if card.window_id and card.window_id in live:
        return "○"
    if card.started_at and not card.window_id:
        return "◇"
    return " "


@cli.command(name="list")
@click.option("--column", default=None, help="Only this column (todo, in-progress, review, done, unassigned).")
@click.option("-a", "--all", "show_all", is_flag=True, help="Include the Done column.")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@pass_app
def list_cards(app: App, column, show_all, as_json):
    """List cards grouped by column."""
    filter_id = None
    if column:
        filter_id = column_id_from_name(column)
        if filter_id is None:
            raise click.BadParameter(
                f'Unknown column "{column}". Valid: unassigned, todo, in-progress, review, done',
                param_hint="--column",
            )

    async def go():
        if app.session_flag:
            ctx = await app.load()
            sessions = {ctx.session_name: ctx.board.cards}
        else:
            sessions = {name: s.board.cards for name, s in app.storage.load_all().items()}
        multi = len(sessions) > 1
        live = live_window_ids(await app.client.get_server())

        grouped: Dict[str, List[Tuple[str, Card]]] = {c.id: [] for c in DEFAULT_COLUMNS}
        for session_name, cards in sessions.items():
            for c in cards.values():
                bucket = c.column_id if c.column_id in grouped else DEFAULT_COLUMNS[0].id
                grouped[bucket].append((session_name, c))

        shown = [
            col for col in DEFAULT_COLUMNS
            if (filter_id is None or col.id == filter_id)
            and (col.id != COL_DONE or show_all or filter_id == COL_DONE)
        ]

        if as_json:
            payload = [
                {
                    "id": col.id,
                    "title": col.title,
                    "cards": [
                        dict(card_to_dict(c), session_name=sname, live=bool(c.window_id and c.window_id in live))
                        for sname, c in grouped[col.id]
                    ],
                }
                for col in shown
            ]
            click.echo(json.dumps(payload, indent=2))
            return

        printed = False
        for col in shown:
            entries = grouped[col.id]
            if not entries and filter_id is None:
                continue
            if printed:
                click.echo()
            click.echo(f"{col.title}:")
            printed = True
            if not entries:
                click.echo("  (empty)")
                continue
            for sname, c in entries:
                suffix = f"  [{sname}]" if multi else ""
                click.echo(f"  {_live_indicator(c, live)} {c.id[:8]}  {c.name}{suffix}")
        if not printed:
            click.echo("No cards.")
    _run(go())


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def card_status(card: Card, live: bool) -> str:
    if live:
        return "live"
    if card.started_at and not card.window_id:
        return "closed"
    if card.started_at:
        return "started"
    return "unstarted"


@cli.command()
@click.argument("card")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@pass_app
def show(app: App, card, as_json):
    """Show details for one card."""
    async def go():
        ctx, cid, found = await app.resolve(card)
        live = bool(found.window_id and found.window_id in live_window_ids(ctx.server))
        column = column_name_from_id(found.column_id)
        if as_json:
            click.echo(json.dumps(dict(card_to_dict(found), column=column, live=live), indent=2))
            return
        definition = next((c for c in ctx.board.commands if c.id == found.command), None)
        command = definition.label if definition else found.command
        if found.custom_command:
            command += f" ({found.custom_command})"

        click.echo(f"Name:        {found.name}")
        click.echo(f"ID:          {cid}")
        click.echo(f"Column:      {column}")
        click.echo(f"Status:      {card_status(found, live)}")
        if found.description:
            click.echo(f"Description: {found.description}")
        if found.acceptance_criteria:
            click.echo(f"AC:          {found.acceptance_criteria}")
        click.echo(f"Dir:         {found.dir}")
        click.echo(f"Command:     {command}")
        if found.worktree:
            click.echo(f"Worktree:    {found.worktree_path or 'yes'}")
        if found.window_id:
            click.echo(f"Window ID:   {found.window_id}")
        click.echo(f"Created:     {_format_ms(found.created_at)}")
        if found.started_at:
            click.echo(f"Started:     {_format_ms(found.started_at)}")
        if found.closed_at:
            click.echo(f"Closed:      {_format_ms(found.closed_at)}")
    _run(go())


def tail_lines(raw: str, count: int) -> str:
    lines = [line.rstrip() for line in raw.split("\n")]
    return "\n".join([line for line in lines if line][-count:])


@cli.command()
@click.argument("card")
@click.option("-n", "--tail", type=click.IntRange(min=1), default=None, help="Only the last N non-blank lines.")
@click.option("--json", "as_json", is_flag=True, help="JSON output.")
@pass_app
def peek(app: App, card, tail, as_json):
    """Print the current pane content of a card's window."""
    async def go():
        _, cid, found = await app.resolve(card)
        if not found.window_id:
            raise click.ClickException(f'Card "{found.name}" has no live window. Start it first.')
        try:
            raw = await app.client.capture_pane(found.window_id)
        except TmuxError as exc:
            raise click.ClickException(str(exc))
        output = tail_lines(raw, tail) if tail else strip_trailing_blanks(raw)
        if as_json:
            click.echo(json.dumps({"cardId": cid, "windowId": found.window_id, "content": output}, indent=2))
        else:
            click.echo(output)
    _run(go())


@cli.command()
@click.argument("card")
@click.argument("text", nargs=-1, required=True)
@click.option("--no-enter", is_flag=True, help="Do not press Enter after the text.")
@pass_app
def send(app: App, card, text, no_enter):
    """Type TEXT into a card's pane (joined with spaces)."""
    async def go():
        _, _, found = await app.resolve(card)
        if not found.window_id:
            raise click.ClickException(f'Card "{found.name}" has no live window. Start it first.')
        try:
            await app.client.send_keys(found.window_id, " ".join(text), enter=not no_enter)
        except TmuxError as exc:
            raise click.ClickException(str(exc))
        click.echo(f'Sent to "{found.name}"')
    _run(go())


@cli.command()
@click.argument("card")
@pass_app
def switch(app: App, card):
    """Jump to a card's window (switch-client inside tmux, attach outside)."""
    async def go():
        ctx, _, found = await app.resolve(card)
        if not found.window_id or found.window_id not in live_window_ids(ctx.server):
            raise click.ClickException(f'Card "{found.name}" has no live window. Start it first.')
        return resolve_switch_args(found.session_name or ctx.session_name, found.window_id,
                                   app.server_name, app.env)
    plan = _run(go())
    code = subprocess.call(["tmux", *plan.args])
    if code != 0:
        raise click.ClickException(f"tmux {plan.mode} failed (exit {code})")


# -------------------- board maintenance --------------------

@cli.command()
@pass_app
def refresh(app: App):
    """Reconcile windows, promote idle cards, demote active ones, then exit."""
    async def go():
        names = [app.session_flag] if app.session_flag else app.storage.session_names()
        if not names:
            names = [await app.detect_session()]
        prefix_sessions = len(names) > 1
        any_changes = False

        for name in names:
            ctx = await app.load(name)
            state = ctx.state
            now = now_ms()
            pane_to_window = pane_window_map(ctx.server)
            contents = await app.client.capture_panes(pane_to_window.keys()) if pane_to_window else {}
            fresh = compute_pane_hashes(contents)
            times = restore_change_times(state.last_change_times, state.pane_hashes, fresh, pane_to_window, now)
            for window_id in set(pane_to_window.values()) - set(times):
                times[window_id] = now

            threshold = effective_idle_threshold(ctx.board.idle_threshold_ms, app.settings)
            promotions = get_idle_promotions(ctx.board.cards, times, now, threshold)
            demotions = get_review_demotions_by_time(ctx.board.cards, times, now, threshold)
            ctx.board = set_column(ctx.board, promotions, COL_REVIEW)
            ctx.board = set_column(ctx.board, demotions, COL_IN_PROGRESS)
            state.last_change_times = times
            state.pane_hashes = fresh
            app.save(ctx)

            prefix = f"[{name}] " if prefix_sessions else ""
            for cid in promotions:
                click.echo(f'{prefix}Promoted "{ctx.board.cards[cid].name}" → Review (idle)')
            for cid in demotions:
                click.echo(f'{prefix}Demoted "{ctx.board.cards[cid].name}" → In Progress (active)')
            any_changes = any_changes or bool(promotions or demotions)

        if not any_changes:
            click.echo("Board is up to date.")
    _run(go())


@cli.command()
@pass_app
def sessions(app: App):
    """List sessions known to tmux or to the state file."""
    async def go():
        server = await app.client.get_server()
        live = {s.name: s for s in server.sessions}
        stored = app.storage.load_all()
        names = sorted(set(live) | set(stored))
        if not names:
            click.echo("No sessions found.")
            return
        for name in names:
            parts = []
            session = live.get(name)
            if session is not None:
                count = len(session.windows)
                parts.append(f"{count} window{'' if count == 1 else 's'}")
                if session.attached:
                    parts.append("attached")
            else:
                parts.append("no tmux session")
            cards = len(stored[name].board.cards) if name in stored else 0
            parts.append(f"{cards} card{'' if cards == 1 else 's'}")
            click.echo(f"  {name}  {', '.join(parts)}")
    _run(go())


@cli.command(name="board")
@click.option("-f", "--follow", is_flag=True, help="Keep the board on screen and update it live.")
@pass_app
def show_board(app: App, follow):
    """Render the board."""
    self_pane = app.env.get("TMUX_PANE")
    if not follow:
        async def once():
            ctx = await app.load()
            if ctx.reconciled:
                app.save(ctx)
            activity = seed_activity(ctx.state.last_change_times)
            display(derive(ctx.server, ctx.board, self_pane, activity))
        _run(once())
        return

    async def live():
        session_name = await app.detect_session()
        monitor = BoardMonitor(
            app.client, app.storage, session_name, app.settings, self_pane,
            renderer=lambda columns: redraw(columns, f"tukan: {session_name}"),
        )
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, monitor.stop)
        await monitor.run()

    if app.settings.alt_screen:
        enter_alt_screen()
    try:
        _run(live())
    finally:
        if app.settings.alt_screen:
            leave_alt_screen()
