"""Prompt deployment and per-step prompt text."""

from __future__ import annotations

import shutil
from pathlib import Path

from skill_builder.errors import WorkspacePreparationError
from skill_builder.paths import PROMPTS_DIR_NAME, SKILLS_DIR_NAME

SHARED_CONTEXT_FILE = "shared-context.md"


def deploy_prompts(source_dir: Path, workspace: Path) -> Path:
    """Copy bundled ``*.md`` prompts into ``<workspace>/prompts``.

    Existing files are overwritten so prompt updates ship with the app.
    """

    if not source_dir.is_dir():
        raise WorkspacePreparationError(f"Prompts source directory not found: {source_dir}")

    dest_dir = workspace / PROMPTS_DIR_NAME
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        for path in sorted(source_dir.glob("*.md")):
            shutil.copyfile(path, dest_dir / path.name)
    except OSError as error:
        raise WorkspacePreparationError(f"Failed to deploy prompts: {error}") from error
    return dest_dir


def require_prompts(workspace: Path, *templates: str) -> None:
    """Fail fast when a prompt the agent is told to read is missing."""

    prompts_dir = workspace / PROMPTS_DIR_NAME
    missing = [
        name
        for name in (SHARED_CONTEXT_FILE, *templates)
        if not (prompts_dir / name).is_file()
    ]
    if missing:
        raise WorkspacePreparationError(
            f"Missing prompt files in {prompts_dir}: {', '.join(missing)}",
        )


def build_prompt(*, prompt_template: str, output_file: str, skill_name: str, domain: str) -> str:
    return (
        f"Read {PROMPTS_DIR_NAME}/{SHARED_CONTEXT_FILE} and {PROMPTS_DIR_NAME}/{prompt_template} "
        "and follow the instructions. "
        f"The domain is: {domain}. The skill name is: {skill_name}. "
        f"The skill directory is {SKILLS_DIR_NAME}/{skill_name}. "
        f"Write output to {SKILLS_DIR_NAME}/{skill_name}/{output_file}."
    )
