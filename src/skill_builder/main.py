"""CLI entrypoint for skill-builder."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from skill_builder import __version__
from skill_builder.controllers import (
    AgentRunCommand,
    CommandResult,
    DiscoveryResolveCommand,
    ReconcileCommand,
    SettingsSetCommand,
    SkillBuilderCliController,
    WorkflowResearchCommand,
    WorkflowResetCommand,
    WorkflowReviewCommand,
    WorkflowRunStepCommand,
    WorkflowSkillCommand,
    WorkspaceCommand,
)
from skill_builder.errors import SkillBuilderError
from skill_builder.reconciliation import DiscoveryResolution

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SkillBuilderCliController(emit=click.echo)

T = TypeVar("T")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_workspace_option = click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace root (holds prompts/ and skills/).",
)


@click.group()
@click.version_option(version=__version__, prog_name="skill-builder")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def skill_builder(log_level: str) -> None:
    """Skill builder workflow orchestrator."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@skill_builder.group()
def workflow() -> None:
    """Workflow step commands."""


@workflow.command("run-step")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Skill name.")
@click.option("--step", "step_id", type=int, required=True, help="Agent step id.")
@click.option("--domain", required=True, help="Business domain of the skill.")
def workflow_run_step(
    db_path: Path | None,
    workspace: Path | None,
    skill_name: str,
    step_id: int,
    domain: str,
) -> None:
    """Run one agent step for a skill."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.run_step(
                WorkflowRunStepCommand(
                    db_path=db_path,
                    workspace=workspace,
                    skill_name=skill_name,
                    step_id=step_id,
                    domain=domain,
                ),
            ),
        ),
        failure_message=f"Step {step_id} failed.",
    )


@workflow.command("run-research")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Skill name.")
@click.option("--domain", required=True, help="Business domain of the skill.")
def workflow_run_research(
    db_path: Path | None,
    workspace: Path | None,
    skill_name: str,
    domain: str,
) -> None:
    """Run both research agents of step 2 concurrently."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.run_research(
                WorkflowResearchCommand(
                    db_path=db_path,
                    workspace=workspace,
                    skill_name=skill_name,
                    domain=domain,
                ),
            ),
        ),
        failure_message="Parallel research failed.",
    )


@workflow.command("reset")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Skill name.")
@click.option(
    "--from-step",
    "from_step_id",
    type=click.IntRange(min=0, max=9),
    required=True,
    help="First step to redo; its outputs and all later ones are deleted.",
)
def workflow_reset(
    db_path: Path | None,
    workspace: Path | None,
    skill_name: str,
    from_step_id: int,
) -> None:
    """Rewind a skill to an earlier step."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.reset(
                WorkflowResetCommand(
                    db_path=db_path,
                    workspace=workspace,
                    skill_name=skill_name,
                    from_step_id=from_step_id,
                ),
            ),
        ),
    )


@workflow.command("review")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Skill name.")
@click.option("--step", "step_id", type=int, required=True, help="Review gate step id.")
def workflow_review(
    db_path: Path | None,
    workspace: Path | None,
    skill_name: str,
    step_id: int,
) -> None:
    """Mark a human review gate as done."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.review(
                WorkflowReviewCommand(
                    db_path=db_path,
                    workspace=workspace,
                    skill_name=skill_name,
                    step_id=step_id,
                ),
            ),
        ),
    )


@workflow.command("package")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Skill name.")
def workflow_package(db_path: Path | None, workspace: Path | None, skill_name: str) -> None:
    """Package `SKILL.md` and `references/` into a `.skill` archive."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.package(
                WorkflowSkillCommand(db_path=db_path, workspace=workspace, skill_name=skill_name),
            ),
        ),
    )


@workflow.command("state")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Skill name.")
def workflow_state(db_path: Path | None, workspace: Path | None, skill_name: str) -> None:
    """Show the stored run and step statuses of a skill."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.state(
                WorkflowSkillCommand(db_path=db_path, workspace=workspace, skill_name=skill_name),
            ),
        ),
    )


@skill_builder.group()
def agents() -> None:
    """Ad-hoc agent commands."""


@agents.command("run")
@_db_path_option
@_workspace_option
@click.option("--agent-id", required=True, help="Registry id for the agent.")
@click.option("--prompt", required=True, help="Prompt text.")
@click.option("--model", default="sonnet", show_default=True, help="Model identifier.")
@click.option("--max-turns", type=click.IntRange(min=1), default=None, help="Turn budget.")
def agents_run(  # noqa: PLR0913
    db_path: Path | None,
    workspace: Path | None,
    agent_id: str,
    prompt: str,
    model: str,
    max_turns: int | None,
) -> None:
    """Run one agent with the workspace as its working directory."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.run_agent(
                AgentRunCommand(
                    db_path=db_path,
                    workspace=workspace,
                    agent_id=agent_id,
                    prompt=prompt,
                    model=model,
                    max_turns=max_turns,
                ),
            ),
        ),
        failure_message=f"Agent {agent_id} failed.",
    )


@skill_builder.command("reconcile")
@_db_path_option
@_workspace_option
@click.option(
    "--strict/--no-strict",
    default=False,
    show_default=True,
    help="Exit non-zero when any item could not be reconciled.",
)
def reconcile(db_path: Path | None, workspace: Path | None, strict: bool) -> None:
    """Reconcile stored state with the skills directory and git history."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.reconcile(
                ReconcileCommand(db_path=db_path, workspace=workspace, strict=strict),
            ),
        ).lines,
    )


@skill_builder.group()
def discoveries() -> None:
    """Commands for skill directories with no stored run."""


@discoveries.command("resolve")
@_db_path_option
@_workspace_option
@click.option("--skill", "skill_name", required=True, help="Discovered directory name.")
@click.option(
    "--resolution",
    type=click.Choice([resolution.value for resolution in DiscoveryResolution]),
    required=True,
    help="How to resolve the discovery.",
)
@click.option(
    "--step",
    "step_id",
    type=int,
    default=None,
    help="Step to adopt at (adopt_builder); defaults to workflow.md.",
)
@click.option("--domain", default="", help="Domain recorded for the adopted run.")
def discoveries_resolve(  # noqa: PLR0913
    db_path: Path | None,
    workspace: Path | None,
    skill_name: str,
    resolution: str,
    step_id: int | None,
    domain: str,
) -> None:
    """Adopt or delete a discovered skill directory."""

    _emit_result(
        _guard(
            lambda: CONTROLLER.resolve_discovery(
                DiscoveryResolveCommand(
                    db_path=db_path,
                    workspace=workspace,
                    skill_name=skill_name,
                    resolution=DiscoveryResolution(resolution),
                    step_id=step_id,
                    domain=domain,
                ),
            ),
        ),
    )


@skill_builder.group("settings")
def settings_group() -> None:
    """Stored application settings."""


@settings_group.command("show")
@_db_path_option
def settings_show(db_path: Path | None) -> None:
    """Show effective settings (API key masked)."""

    _emit_lines(_guard(lambda: CONTROLLER.show_settings(db_path)))


@settings_group.command("set")
@_db_path_option
@click.option("--api-key", default=None, help="Anthropic API key to store.")
@click.option(
    "--workspace-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace root to store.",
)
def settings_set(db_path: Path | None, api_key: str | None, workspace_path: Path | None) -> None:
    """Store the API key and/or workspace path."""

    if api_key is None and workspace_path is None:
        raise click.UsageError("Pass --api-key and/or --workspace-path.")
    _emit_lines(
        _guard(
            lambda: CONTROLLER.set_settings(
                SettingsSetCommand(
                    db_path=db_path,
                    api_key=api_key,
                    workspace_path=workspace_path,
                ),
            ),
        ),
    )


@skill_builder.group()
def workspace() -> None:
    """Workspace setup commands."""


@workspace.command("init")
@_db_path_option
@_workspace_option
def workspace_init(db_path: Path | None, workspace: Path | None) -> None:
    """Create the workspace, deploy prompts, and seed the skills repository."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.init_workspace(
                WorkspaceCommand(db_path=db_path, workspace=workspace),
            ),
        ),
    )


@workspace.command("migrate-layout")
@_db_path_option
@_workspace_option
def workspace_migrate_layout(db_path: Path | None, workspace: Path | None) -> None:
    """Move a flat workspace into the nested `skills/` layout."""

    _emit_lines(
        _guard(
            lambda: CONTROLLER.migrate_layout(
                WorkspaceCommand(db_path=db_path, workspace=workspace),
            ),
        ),
    )


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except (SkillBuilderError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CommandResult, *, failure_message: str = "Command failed.") -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    skill_builder()
