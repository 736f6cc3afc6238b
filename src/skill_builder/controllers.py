"""Controllers for skill-builder CLI commands."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from skill_builder.agents import AgentInvocation, AgentRegistry, ConsoleEventHandler
from skill_builder.config import Settings
from skill_builder.errors import LayoutMigrationError
from skill_builder.layout import MigrationOutcome, migrate_to_nested_layout
from skill_builder.models import AppSettings, WorkflowStateView
from skill_builder.paths import skills_root
from skill_builder.reconciliation import (
    DiscoveryResolution,
    ReconciliationReport,
    Reconciler,
)
from skill_builder.storage.repository import WorkflowRepository
from skill_builder.vcs import GitVersionControl
from skill_builder.workflow.engine import WorkflowEngine
from skill_builder.workflow.prompts import deploy_prompts
from skill_builder.workflow.steps import STEP_NAMES

Emit = Callable[[str], None]


@dataclass(slots=True)
class CommandResult:
    lines: list[str] = field(default_factory=list)
    success: bool = True


@dataclass(slots=True)
class WorkflowRunStepCommand:
    """CLI input for one agent step."""

    db_path: Path | None
    workspace: Path | None
    skill_name: str
    step_id: int
    domain: str


@dataclass(slots=True)
class WorkflowResearchCommand:
    """CLI input for the parallel research pair."""

    db_path: Path | None
    workspace: Path | None
    skill_name: str
    domain: str


@dataclass(slots=True)
class WorkflowResetCommand:
    db_path: Path | None
    workspace: Path | None
    skill_name: str
    from_step_id: int


@dataclass(slots=True)
class WorkflowReviewCommand:
    db_path: Path | None
    workspace: Path | None
    skill_name: str
    step_id: int


@dataclass(slots=True)
class WorkflowSkillCommand:
    """CLI input for commands addressing one skill (package, state)."""

    db_path: Path | None
    workspace: Path | None
    skill_name: str


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for an ad-hoc agent outside the step catalog."""

    db_path: Path | None
    workspace: Path | None
    agent_id: str
    prompt: str
    model: str
    max_turns: int | None


@dataclass(slots=True)
class ReconcileCommand:
    db_path: Path | None
    workspace: Path | None
    strict: bool = False


@dataclass(slots=True)
class DiscoveryResolveCommand:
    db_path: Path | None
    workspace: Path | None
    skill_name: str
    resolution: DiscoveryResolution
    step_id: int | None
    domain: str


@dataclass(slots=True)
class SettingsSetCommand:
    db_path: Path | None
    api_key: str | None
    workspace_path: Path | None


@dataclass(slots=True)
class WorkspaceCommand:
    db_path: Path | None
    workspace: Path | None


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    repository: WorkflowRepository
    registry: AgentRegistry
    reconciler: Reconciler
    report: ReconciliationReport

    @property
    def workspace(self) -> Path:
        return self.settings.workspace_path

    def engine(self) -> WorkflowEngine:
        return WorkflowEngine(
            registry=self.registry,
            repository=self.repository,
            prompts_source_dir=self.settings.prompts_source_dir,
            permission_mode=self.settings.worker.permission_mode,
            api_key=self.settings.api_key,
        )


class SkillBuilderCliController:
    """Coordinates workflow, agent, reconciliation, and settings CLI operations.

    Every command that accepts work reconciles first and holds a workflow
    session for its skill while it runs.
    """

    def __init__(self, emit: Emit | None = None) -> None:
        self._emit = emit or (lambda _line: None)

    def run_step(self, command: WorkflowRunStepCommand) -> CommandResult:
        return asyncio.run(self._run_step(command))

    def run_research(self, command: WorkflowResearchCommand) -> CommandResult:
        return asyncio.run(self._run_research(command))

    def reset(self, command: WorkflowResetCommand) -> CommandResult:
        return asyncio.run(self._reset(command))

    def review(self, command: WorkflowReviewCommand) -> CommandResult:
        return asyncio.run(self._review(command))

    def package(self, command: WorkflowSkillCommand) -> CommandResult:
        return asyncio.run(self._package(command))

    def state(self, command: WorkflowSkillCommand) -> list[str]:
        settings = _settings(command.db_path, command.workspace)
        with _repository(settings) as repository:
            state = WorkflowStateView(
                run=repository.get_workflow_run(command.skill_name),
                steps=repository.get_workflow_steps(command.skill_name),
            )
        return _render_state(command.skill_name, state)

    def run_agent(self, command: AgentRunCommand) -> CommandResult:
        return asyncio.run(self._run_agent(command))

    def reconcile(self, command: ReconcileCommand) -> CommandResult:
        return asyncio.run(self._reconcile(command))

    def resolve_discovery(self, command: DiscoveryResolveCommand) -> CommandResult:
        return asyncio.run(self._resolve_discovery(command))

    def show_settings(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path, None)
        with _repository(settings) as repository:
            stored = repository.read_app_settings()
            workspace = _effective_workspace(settings, repository, explicit=None)
        return [
            f"DB: {settings.db_path}",
            f"Workspace: {workspace}",
            f"Prompts source: {settings.prompts_source_dir}",
            f"Worker command: {' '.join(settings.worker.command)}",
            f"API key: {_mask(settings.api_key or stored.anthropic_api_key)}",
        ]

    def set_settings(self, command: SettingsSetCommand) -> list[str]:
        settings = _settings(command.db_path, None)
        with _repository(settings) as repository:
            stored = repository.read_app_settings()
            updated = AppSettings(
                anthropic_api_key=(
                    command.api_key if command.api_key is not None else stored.anthropic_api_key
                ),
                workspace_path=(
                    str(command.workspace_path.expanduser())
                    if command.workspace_path is not None
                    else stored.workspace_path
                ),
            )
            repository.write_app_settings(updated)
        return [
            "Settings saved: "
            f"workspace={updated.workspace_path or '-'} "
            f"api_key={_mask(updated.anthropic_api_key)}",
        ]

    def init_workspace(self, command: WorkspaceCommand) -> list[str]:
        settings = _settings(command.db_path, command.workspace)
        with _repository(settings) as repository:
            workspace = _effective_workspace(settings, repository, explicit=command.workspace)
        root = skills_root(workspace)
        root.mkdir(parents=True, exist_ok=True)
        prompts_dir = deploy_prompts(settings.prompts_source_dir, workspace)
        lines = [f"Workspace: {workspace}", f"Prompts deployed to {prompts_dir}"]
        if settings.reconciliation.auto_commit:
            created = GitVersionControl().ensure_repo(root)
            lines.append(
                f"Skills repository {'initialized' if created else 'already present'} at {root}",
            )
        return lines

    def migrate_layout(self, command: WorkspaceCommand) -> list[str]:
        settings = _settings(command.db_path, command.workspace)
        with _repository(settings) as repository:
            workspace = _effective_workspace(settings, repository, explicit=command.workspace)
            busy = sorted(
                {
                    session.skill_name
                    for session in repository.list_open_sessions()
                    if psutil.pid_exists(session.pid)
                },
            )
        if busy:
            raise LayoutMigrationError(
                f"Skills still being worked on ({', '.join(busy)}); cannot migrate {workspace}",
            )
        result = migrate_to_nested_layout(workspace)
        if result.outcome is MigrationOutcome.MIGRATED:
            return [
                f"Migrated {len(result.moved_entries)} entries under {skills_root(workspace)}",
            ]
        return [f"Layout migration skipped: {result.outcome.value}"]

    async def _run_step(self, command: WorkflowRunStepCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, command.skill_name) as runtime:
            engine = runtime.engine()
            result = await engine.run_step(
                command.skill_name,
                command.step_id,
                command.domain,
                runtime.workspace,
            )
            state = engine.get_state(command.skill_name)
        lines = [
            f"Step {command.step_id} {'completed' if result.success else 'failed'}: "
            f"agent_id={result.agent_id} exit_code={result.exit_code}",
            *_render_state(command.skill_name, state),
        ]
        return CommandResult(lines=lines, success=result.success)

    async def _run_research(self, command: WorkflowResearchCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, command.skill_name) as runtime:
            engine = runtime.engine()
            result = await engine.run_parallel_pair(
                command.skill_name,
                command.domain,
                runtime.workspace,
            )
            state = engine.get_state(command.skill_name)
        lines = [
            f"Research {member.variant}: {'completed' if member.success else 'failed'} "
            f"(agent_id={member.agent_id})"
            for member in result.members
        ]
        lines.extend(_render_state(command.skill_name, state))
        return CommandResult(lines=lines, success=result.success)

    async def _reset(self, command: WorkflowResetCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, command.skill_name) as runtime:
            engine = runtime.engine()
            removed = engine.reset_from(
                command.skill_name,
                runtime.workspace,
                command.from_step_id,
            )
            state = engine.get_state(command.skill_name)
        lines = [f"Reset {command.skill_name} to step {command.from_step_id}"]
        lines.extend(f"Removed {path}" for path in removed)
        lines.extend(_render_state(command.skill_name, state))
        return CommandResult(lines=lines)

    async def _review(self, command: WorkflowReviewCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, command.skill_name) as runtime:
            engine = runtime.engine()
            engine.complete_review_step(command.skill_name, command.step_id)
            state = engine.get_state(command.skill_name)
        return CommandResult(
            lines=[
                f"Review step {command.step_id} completed",
                *_render_state(command.skill_name, state),
            ],
        )

    async def _package(self, command: WorkflowSkillCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, command.skill_name) as runtime:
            result = runtime.engine().package_skill(command.skill_name, runtime.workspace)
        return CommandResult(lines=[f"Packaged {result.file_path} ({result.size_bytes} bytes)"])

    async def _run_agent(self, command: AgentRunCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, None) as runtime:
            invocation = AgentInvocation(
                prompt=command.prompt,
                model=command.model,
                api_key=runtime.engine().resolve_api_key(),
                cwd=str(runtime.workspace),
                max_turns=command.max_turns,
                permission_mode=runtime.settings.worker.permission_mode,
            )
            runtime.workspace.mkdir(parents=True, exist_ok=True)
            handle = await runtime.registry.spawn(command.agent_id, invocation)
            outcome = await handle.wait()
        return CommandResult(
            lines=[
                f"Agent {outcome.agent_id} "
                f"{'finished' if outcome.success else 'failed'} (exit_code={outcome.exit_code})",
            ],
            success=outcome.success,
        )

    async def _reconcile(self, command: ReconcileCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, None) as runtime:
            report = runtime.report
        if command.strict:
            report.raise_for_failures()
        return CommandResult(lines=_render_report(report), success=not report.failures)

    async def _resolve_discovery(self, command: DiscoveryResolveCommand) -> CommandResult:
        async with self._runtime(command.db_path, command.workspace, None) as runtime:
            run = runtime.reconciler.resolve_discovery(
                command.skill_name,
                command.resolution,
                step_id=command.step_id,
                domain=command.domain,
            )
        if run is None:
            return CommandResult(lines=[f"Deleted {command.skill_name}"])
        return CommandResult(
            lines=[
                f"Adopted {run.skill_name} ({run.skill_source.value}) "
                f"at step {run.current_step} status={run.status.value}",
            ],
        )

    @asynccontextmanager
    async def _runtime(
        self,
        db_path: Path | None,
        workspace: Path | None,
        skill_name: str | None,
    ) -> AsyncIterator[_Runtime]:
        """Open the store, reconcile, and hold a session for ``skill_name``."""

        settings = _settings(db_path, workspace)
        with _repository(settings) as repository:
            settings.workspace_path = _effective_workspace(settings, repository, explicit=workspace)
            registry = AgentRegistry(
                worker_command=settings.worker.command,
                event_handler=ConsoleEventHandler(self._emit),
                keep_stdin_open=settings.worker.keep_stdin_open,
                max_line_bytes=settings.worker.max_line_bytes,
            )
            reconciler = Reconciler(
                repository=repository,
                registry=registry,
                skills_root=settings.skills_root,
                vcs=GitVersionControl() if settings.reconciliation.auto_commit else None,
                prune_ghosts=settings.reconciliation.prune_ghosts,
            )
            report = await reconciler.reconcile()
            session = (
                repository.create_session(skill_name, os.getpid()) if skill_name else None
            )
            try:
                yield _Runtime(
                    settings=settings,
                    repository=repository,
                    registry=registry,
                    reconciler=reconciler,
                    report=report,
                )
            finally:
                leftovers = await registry.cancel_all()
                for agent_id, reason in leftovers.failed.items():
                    self._emit(f"[{agent_id}] could not be stopped: {reason}")
                if session is not None:
                    repository.close_session(session.session_id)


def _settings(db_path: Path | None, workspace: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path, workspace_path=workspace)
    settings.validate()
    return settings


def _effective_workspace(
    settings: Settings,
    repository: WorkflowRepository,
    *,
    explicit: Path | None,
) -> Path:
    """CLI option, then environment, then stored app settings, then the default."""

    if explicit is not None or os.getenv("SKILL_BUILDER_WORKSPACE"):
        return settings.workspace_path
    stored = repository.read_app_settings().workspace_path
    return Path(stored).expanduser() if stored else settings.workspace_path


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkflowRepository]:
    repository = WorkflowRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _render_state(skill_name: str, state: WorkflowStateView) -> list[str]:
    if state.run is None:
        return [f"No workflow run for {skill_name}"]
    run = state.run
    lines = [
        f"Skill: {run.skill_name} domain={run.domain or '-'} source={run.skill_source.value}",
        f"Current step: {run.current_step} ({STEP_NAMES.get(run.current_step, '?')}) "
        f"status={run.status.value}",
    ]
    for step in state.steps:
        label = f"{step.step_id}{step.variant}"
        lines.append(
            f"  step {label:<3} {STEP_NAMES.get(step.step_id, '?'):<36} {step.status.value}",
        )
    return lines


def _render_report(report: ReconciliationReport) -> list[str]:
    lines = [
        "Reconciliation: "
        f"actions={report.actions} orphaned_sessions={len(report.orphaned_sessions)} "
        f"cancelled_agents={len(report.cancelled_agents)} "
        f"repaired_runs={len(report.repaired_runs)} pruned_ghosts={len(report.pruned_ghosts)} "
        f"committed_dirs={len(report.committed_dirs)}",
    ]
    lines.extend(f"Ghost (no directory): {name}" for name in report.flagged_ghosts)
    for discovery in report.discoveries:
        suggestion = (
            f" suggested_step={discovery.suggested_step}"
            if discovery.suggested_step is not None
            else ""
        )
        lines.append(
            f"Discovery: {discovery.skill_name} "
            f"skill_md={'yes' if discovery.has_skill_md else 'no'}{suggestion}",
        )
    lines.extend(f"Failure: {failure}" for failure in report.failures)
    return lines


def _mask(secret: str | None) -> str:
    if not secret:
        return "-"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"
