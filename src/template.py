"""Plain-text card template edited through $EDITOR by `tukan edit`.

meta_only restricts the header to Name; used for cards whose window is
already running, where dir/worktree/command can no longer take effect.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict

from models import Card

DESC_MARKER = "## Description"
CRITERIA_MARKER = "## Acceptance Criteria"


@dataclass(frozen=True)
class TemplateValues:
    name: str
    description: str = ""
    acceptance_criteria: str = ""
    dir: str = ""
    worktree: bool = False
    worktree_path: str = ""
    command: str = "shell"

    @classmethod
    def from_card(cls, card: Card) -> "TemplateValues":
        return cls(
            name=card.name,
            description=card.description,
            acceptance_criteria=card.acceptance_criteria,
            dir=card.dir,
            worktree=card.worktree,
            worktree_path=card.worktree_path or "",
            command=card.command,
        )


def build_card_template(values: TemplateValues, meta_only: bool = False) -> str:
    lines = [
        "# Tukan Card",
        "# Lines starting with # are ignored.",
        "# Save and quit (:wq) to apply, quit without saving (:q!) to cancel.",
        "",
        f"Name: {values.name}",
    ]
    if not meta_only:
        lines.append(f"Working Directory: {values.dir}")
        lines.append(f"Worktree: {'yes' if values.worktree else 'no'}")
        if values.worktree:
            lines.append(f"Worktree Path: {values.worktree_path}")
        lines.append(f"Command: {values.command}")
    lines += [
        "",
        DESC_MARKER,
        values.description or "",
        "",
        CRITERIA_MARKER,
        values.acceptance_criteria or "",
        "",
    ]
    return "\n".join(lines)


def _section(content: str, start: int, end: int) -> str:
    text = content[start:end]
    if text.startswith("\n"):
        text = text[1:]
    return text.rstrip()


def parse_card_template(content: str, meta_only: bool = False) -> Dict[str, Any]:
    """Return only the fields present in content, keyed like Card fields."""
    result: Dict[str, Any] = {}
    desc_idx = content.find(DESC_MARKER)
    criteria_idx = content.find(CRITERIA_MARKER)

    header = content[:desc_idx] if desc_idx >= 0 else content
    for line in header.split("\n"):
        if line.startswith("#") or not line.strip() or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key, value = key.strip(), value.strip()
        if key == "Name":
            result["name"] = value
        elif meta_only:
            continue
        elif key == "Working Directory":
            result["dir"] = value
        elif key == "Worktree":
            result["worktree"] = value == "yes"
        elif key == "Worktree Path":
            result["worktree_path"] = value
        elif key == "Command" and value:
            result["command"] = value

    if desc_idx >= 0:
        end = criteria_idx if criteria_idx >= 0 else len(content)
        result["description"] = _section(content, desc_idx + len(DESC_MARKER), end)
    if criteria_idx >= 0:
        result["acceptance_criteria"] = _section(content, criteria_idx + len(CRITERIA_MARKER), len(content))
    return result
