"""Workspace path helpers."""

from __future__ import annotations

from pathlib import Path

from skill_builder.errors import PathTraversalRejected

PROMPTS_DIR_NAME = "prompts"
SKILLS_DIR_NAME = "skills"


def skills_root(workspace: Path) -> Path:
    return workspace / SKILLS_DIR_NAME


def resolve_skill_dir(parent: Path, skill_name: str) -> Path:
    """Return ``parent / skill_name`` if it is a direct child of ``parent``.

    Rejects empty names, separators, ``..`` segments, and anything that
    resolves outside ``parent`` (symlinks included).
    """

    if (
        not skill_name
        or skill_name in {".", ".."}
        or "/" in skill_name
        or "\\" in skill_name
        or "\x00" in skill_name
    ):
        raise PathTraversalRejected(skill_name, parent)

    resolved_parent = parent.resolve()
    candidate = (parent / skill_name).resolve()
    if candidate.parent != resolved_parent:
        raise PathTraversalRejected(skill_name, parent)
    return parent / skill_name
