"""Argument builders for starting a card's window and its git worktree.

Pure functions: they return argv lists; running them belongs to the caller
(tmux args go through TmuxClient.run, which adds the -L flag itself).
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence
import asyncio
import logging
import os
import re

from models import Card, CommandDef, CommandKind, command_kind

logger = logging.getLogger(__name__)


class GitError(Exception):
    """A git invocation failed."""


def sanitize_branch_name(name: str) -> str:
    branch = name.strip().lower()
    branch = re.sub(r"\s+", "-", branch)
    branch = re.sub(r"[^a-z0-9._/-]", "", branch)
    branch = re.sub(r"\.{2,}", ".", branch)
    branch = re.sub(r"^[-./]+|[-./]+$", "", branch)
    return branch or "worktree"


@dataclass(frozen=True)
class WorktreePlan:
    args: List[str]
    worktree_path: str
    branch: str


def build_worktree_args(dir: str, name: str, relative_path: Optional[str] = None) -> WorktreePlan:
    """`git worktree add` for a card; default path is a sibling "<repo>-<branch>"."""
    branch = sanitize_branch_name(name)
    repo_name = os.path.basename(os.path.normpath(dir))
    if relative_path:
        worktree_path = os.path.normpath(os.path.join(dir, relative_path))
    else:
        worktree_path = os.path.normpath(os.path.join(dir, "..", f"{repo_name}-{branch}"))
    return WorktreePlan(
        args=["-C", dir, "worktree", "add", worktree_path, "-b", branch],
        worktree_path=worktree_path,
        branch=branch,
    )


def build_worktree_checkout_args(plan: WorktreePlan) -> List[str]:
    """Same as plan.args but reusing an existing branch."""
    return [a for a in plan.args if a != "-b"]


def build_worktree_remove_args(dir: str, worktree_path: str) -> List[str]:
    return ["-C", dir, "worktree", "remove", worktree_path]


def build_worktree_merge_args(dir: str, branch: str) -> List[List[str]]:
    return [
        ["-C", dir, "merge", "--no-edit", branch],
        ["-C", dir, "branch", "-d", branch],
    ]


def build_prompt(description: str = "", acceptance_criteria: str = "") -> str:
    parts = []
    if description:
        parts.append(description)
    if acceptance_criteria:
        parts.append(f"Acceptance criteria: {acceptance_criteria}")
    return "\n\n".join(parts)


def command_template(card: Card, commands: Sequence[CommandDef]) -> str:
    """Template to run for card; "" means a plain shell."""
    kind = command_kind(card.command)
    if kind is CommandKind.CUSTOM:
        return card.custom_command or ""
    for definition in commands:
        if definition.id == card.command:
            return definition.template
    logger.debug("Unknown command %r on card %s; falling back to shell", card.command, card.id[:8])
    return ""


@dataclass(frozen=True)
class WindowSpec:
    session_name: str
    name: str
    dir: str
    template: str = ""
    description: str = ""
    acceptance_criteria: str = ""


def _env_args(spec: WindowSpec) -> List[str]:
    return [
        "-e", f"TUKAN_CARD_NAME={spec.name}",
        "-e", f"TUKAN_CARD_DESCRIPTION={spec.description}",
        "-e", f"TUKAN_CARD_AC={spec.acceptance_criteria}",
    ]


def _command_args(spec: WindowSpec) -> List[str]:
    if not spec.template:
        return []
    if spec.template == "claude":
        prompt = build_prompt(spec.description, spec.acceptance_criteria)
        return ["claude", prompt] if prompt else ["claude"]
    return [spec.template]


def build_new_window_args(spec: WindowSpec) -> List[str]:
    return [
        "new-window", "-P", "-F", "#{window_id}",
        "-t", spec.session_name, "-n", spec.name, "-c", spec.dir,
    ] + _env_args(spec) + _command_args(spec)


def build_new_session_args(spec: WindowSpec) -> List[str]:
    return [
        "new-session", "-d", "-P", "-F", "#{window_id}",
        "-s", spec.session_name, "-n", spec.name, "-c", spec.dir,
    ] + _env_args(spec) + _command_args(spec)


def build_send_keys_args(window_id: str, description: str) -> List[List[str]]:
    """Type the description into a fresh shell as comment lines."""
    commands: List[List[str]] = []
    for line in description.splitlines():
        if not line.strip():
            continue
        commands.append(["send-keys", "-t", window_id, "-l", f"# {line}"])
        commands.append(["send-keys", "-t", window_id, "Enter"])
    return commands


@dataclass(frozen=True)
class SwitchPlan:
    mode: str  # "switch" | "attach"
    args: List[str]


def resolve_switch_args(session_name: str, window_id: str, server_name: Optional[str], env: Mapping[str, str]) -> SwitchPlan:
    """switch-client when already inside the same tmux server, else attach."""
    target = f"{session_name}:{window_id}"
    prefix = ["-L", server_name] if server_name else []
    tmux_env = env.get("TMUX")
    if tmux_env and server_name:
        socket_path = tmux_env.split(",")[0]
        if os.path.basename(socket_path) == server_name:
            return SwitchPlan("switch", prefix + ["switch-client", "-t", target])
    return SwitchPlan("attach", prefix + ["attach-session", "-t", target])


async def run_git(args: List[str]) -> str:
    logger.debug("git %s", " ".join(args))
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise GitError("git not found") from exc
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise GitError(stderr.decode("utf-8", "replace").strip() or f"git exit status {proc.returncode}")
    return stdout.decode("utf-8", "replace")
