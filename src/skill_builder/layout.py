"""One-time move from the flat ``<workspace>/<skill>`` layout to ``<workspace>/skills/<skill>``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from skill_builder.agents.registry import AgentRegistry
from skill_builder.errors import LayoutMigrationError
from skill_builder.paths import PROMPTS_DIR_NAME, SKILLS_DIR_NAME

logger = logging.getLogger(__name__)


class MigrationPhase(str, Enum):
    """Checkpoints reached by the migration, in order."""

    NOT_STARTED = "not_started"
    RENAMED_OUT = "renamed_out"
    RECREATED = "recreated"
    RENAMED_IN = "renamed_in"


class MigrationOutcome(str, Enum):
    MIGRATED = "migrated"
    SKIPPED_ALREADY_NESTED = "skipped_already_nested"
    SKIPPED_EMPTY = "skipped_empty"


@dataclass(slots=True)
class LayoutMigrationResult:
    outcome: MigrationOutcome
    phase: MigrationPhase = MigrationPhase.NOT_STARTED
    moved_entries: list[str] = field(default_factory=list)


def migration_temp_dir(workspace: Path) -> Path:
    return workspace.parent / f".{workspace.name}.layout-migration"


def migrate_to_nested_layout(
    workspace: Path,
    *,
    registry: AgentRegistry | None = None,
) -> LayoutMigrationResult:
    """Move every entry of ``workspace`` under ``workspace/skills``.

    The workspace is renamed out to a sibling temp directory, recreated
    empty, and the temp directory is renamed back in as ``skills/``. A
    ``prompts/`` directory that came along is moved back to the workspace
    root. Any failure rolls back to the original layout.
    """

    if registry is not None and registry.is_any_running():
        raise LayoutMigrationError(
            f"Cannot migrate {workspace} while agents are running: "
            f"{', '.join(registry.running_agent_ids())}",
        )
    if (workspace / SKILLS_DIR_NAME).is_dir():
        return LayoutMigrationResult(outcome=MigrationOutcome.SKIPPED_ALREADY_NESTED)
    if not workspace.is_dir() or not any(workspace.iterdir()):
        return LayoutMigrationResult(outcome=MigrationOutcome.SKIPPED_EMPTY)

    temp_dir = migration_temp_dir(workspace)
    if temp_dir.exists():
        raise LayoutMigrationError(
            f"Leftover layout migration directory found at {temp_dir}; "
            "move its contents back into the workspace by hand before retrying.",
        )

    moved = sorted(entry.name for entry in workspace.iterdir())
    phase = MigrationPhase.NOT_STARTED
    try:
        workspace.rename(temp_dir)
        phase = MigrationPhase.RENAMED_OUT

        workspace.mkdir()
        phase = MigrationPhase.RECREATED

        skills_dir = workspace / SKILLS_DIR_NAME
        temp_dir.rename(skills_dir)
        phase = MigrationPhase.RENAMED_IN

        legacy_prompts = skills_dir / PROMPTS_DIR_NAME
        if legacy_prompts.is_dir():
            legacy_prompts.rename(workspace / PROMPTS_DIR_NAME)
    except OSError as error:
        _rollback(workspace, temp_dir, phase)
        raise LayoutMigrationError(
            f"Layout migration of {workspace} failed after phase {phase.value}: {error}",
        ) from error

    logger.info(
        "Migrated workspace %s to nested layout (%s entries moved under %s/)",
        workspace,
        len(moved),
        SKILLS_DIR_NAME,
    )
    return LayoutMigrationResult(
        outcome=MigrationOutcome.MIGRATED,
        phase=phase,
        moved_entries=moved,
    )


def _rollback(workspace: Path, temp_dir: Path, phase: MigrationPhase) -> None:
    """Undo completed phases in reverse order."""

    skills_dir = workspace / SKILLS_DIR_NAME
    try:
        if phase is MigrationPhase.RENAMED_IN:
            skills_dir.rename(temp_dir)
            phase = MigrationPhase.RECREATED
        if phase is MigrationPhase.RECREATED:
            workspace.rmdir()
            phase = MigrationPhase.RENAMED_OUT
        if phase is MigrationPhase.RENAMED_OUT:
            temp_dir.rename(workspace)
    except OSError as error:
        logger.error(
            "Layout migration rollback stopped at phase %s: %s (data remains in %s)",
            phase.value,
            error,
            temp_dir,
        )
        raise LayoutMigrationError(
            f"Rollback failed at phase {phase.value}; data remains in {temp_dir}",
        ) from error
