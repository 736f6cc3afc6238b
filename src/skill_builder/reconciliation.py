"""Cold-start reconciliation of persisted workflow state with the disk and git."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import psutil

from skill_builder.agents.registry import AgentRegistry
from skill_builder.errors import (
    AgentNotFound,
    ReconciliationPartialFailure,
    SkillBuilderError,
    WorkspacePreparationError,
)
from skill_builder.models import SkillSource, WorkflowRunView, WorkflowStatus, WorkflowStepView
from skill_builder.paths import resolve_skill_dir
from skill_builder.storage.repository import WorkflowRepository
from skill_builder.vcs import VersionControl
from skill_builder.workflow.engine import agent_belongs_to
from skill_builder.workflow.state_file import WORKFLOW_STATE_FILE, parse_workflow_state
from skill_builder.workflow.steps import (
    LAST_STEP_ID,
    PARALLEL_PAIR,
    PARALLEL_STEP_ID,
    next_step_id,
    step_kind,
    step_output_files,
)

logger = logging.getLogger(__name__)


class DiscoveryResolution(str, Enum):
    """Caller decision for a skill directory with no stored run."""

    ADOPT_BUILDER = "adopt_builder"
    ADOPT_IMPORTED = "adopt_imported"
    DELETE = "delete"


@dataclass(slots=True)
class Discovery:
    """A skill directory on disk with no stored run."""

    skill_name: str
    path: Path
    has_skill_md: bool
    suggested_step: int | None = None
    suggested_domain: str | None = None


@dataclass(slots=True)
class ReconciliationReport:
    orphaned_sessions: list[str] = field(default_factory=list)
    cancelled_agents: list[str] = field(default_factory=list)
    repaired_runs: list[str] = field(default_factory=list)
    pruned_ghosts: list[str] = field(default_factory=list)
    flagged_ghosts: list[str] = field(default_factory=list)
    discoveries: list[Discovery] = field(default_factory=list)
    committed_dirs: list[str] = field(default_factory=list)
    commit_id: str | None = None
    failures: list[str] = field(default_factory=list)

    @property
    def actions(self) -> int:
        """Number of state changes made; discoveries and flags need a caller decision."""

        return (
            len(self.orphaned_sessions)
            + len(self.cancelled_agents)
            + len(self.repaired_runs)
            + len(self.pruned_ghosts)
            + len(self.committed_dirs)
        )

    def raise_for_failures(self) -> None:
        if self.failures:
            raise ReconciliationPartialFailure(self.failures)


class Reconciler:
    """Brings the store, the registry, and the skills directory back in line.

    Runs once per cold start before new work is accepted. Each item is
    handled on its own: a failure is recorded in the report and the sweep
    moves on.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkflowRepository,
        registry: AgentRegistry,
        skills_root: Path,
        vcs: VersionControl | None = None,
        pid_alive: Callable[[int], bool] = psutil.pid_exists,
        prune_ghosts: bool = True,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.skills_root = skills_root
        self.vcs = vcs
        self._pid_alive = pid_alive
        self.prune_ghosts = prune_ghosts

    async def reconcile(self) -> ReconciliationReport:
        report = ReconciliationReport()
        await self._close_orphaned_sessions(report)
        runs = self.repository.list_workflow_runs()
        self._repair_stale_runs(runs, report)
        self._resolve_ghosts_and_discoveries(runs, report)
        self._commit_untracked(report)

        logger.info(
            "Reconciliation finished: %s action(s), %s discovery(ies), %s failure(s)",
            report.actions,
            len(report.discoveries),
            len(report.failures),
        )
        for failure in report.failures:
            logger.warning("Reconciliation item failed: %s", failure)
        return report

    def resolve_discovery(
        self,
        skill_name: str,
        resolution: DiscoveryResolution,
        *,
        step_id: int | None = None,
        domain: str = "",
    ) -> WorkflowRunView | None:
        """Apply the caller's decision for one discovery.

        Nothing on disk or in the store changes until the path is validated
        and the skill is known to have no stored run.
        Returns the adopted run, or ``None`` after a delete.
        """

        skill_dir = resolve_skill_dir(self.skills_root, skill_name)
        if self.repository.get_workflow_run(skill_name) is not None:
            raise WorkspacePreparationError(
                f"Skill {skill_name!r} is tracked, not a discovery; use the workflow commands.",
            )
        if not skill_dir.is_dir():
            raise WorkspacePreparationError(f"Discovered skill directory not found: {skill_dir}")

        if resolution is DiscoveryResolution.DELETE:
            shutil.rmtree(skill_dir)
            self.repository.delete_workflow_run(skill_name)
            logger.info("Deleted discovered skill directory %s", skill_dir)
            return None

        if resolution is DiscoveryResolution.ADOPT_IMPORTED:
            context_dir = skill_dir / "context"
            if context_dir.is_dir():
                shutil.rmtree(context_dir)
            logger.info("Adopted %s as an imported skill", skill_name)
            return self.repository.save_workflow_run(
                skill_name,
                current_step=LAST_STEP_ID,
                status=WorkflowStatus.COMPLETED,
                domain=domain,
                skill_source=SkillSource.IMPORTED,
            )

        discovery = self._describe(skill_name, skill_dir)
        if step_id is None:
            step_id = discovery.suggested_step
        if step_id is None:
            raise ValueError(
                f"No step given for {skill_name!r} and {WORKFLOW_STATE_FILE} has no current step.",
            )
        step_kind(step_id)
        for completed_step in range(step_id + 1):
            self.repository.save_workflow_step(skill_name, completed_step, WorkflowStatus.COMPLETED)
        logger.info("Adopted %s as a builder skill at step %s", skill_name, step_id)
        return self.repository.save_workflow_run(
            skill_name,
            current_step=step_id,
            status=WorkflowStatus.COMPLETED,
            domain=domain or discovery.suggested_domain or "",
            skill_source=SkillSource.BUILDER,
        )

    async def _close_orphaned_sessions(self, report: ReconciliationReport) -> None:
        sessions = self.repository.list_open_sessions()
        live_skills = {session.skill_name for session in sessions if self._pid_alive(session.pid)}
        for session in sessions:
            if self._pid_alive(session.pid):
                continue
            try:
                if session.skill_name not in live_skills:
                    for agent_id in self.registry.running_agent_ids():
                        if not agent_belongs_to(agent_id, session.skill_name):
                            continue
                        try:
                            await self.registry.cancel(agent_id)
                        except AgentNotFound:
                            # Still mid-spawn or already exited.
                            continue
                        report.cancelled_agents.append(agent_id)
                if self.repository.close_session(session.session_id):
                    report.orphaned_sessions.append(session.session_id)
                    logger.info(
                        "Closed orphaned session %s for skill %s (pid %s is gone)",
                        session.session_id,
                        session.skill_name,
                        session.pid,
                    )
            except SkillBuilderError as error:
                report.failures.append(f"session {session.session_id}: {error}")

    def _repair_stale_runs(self, runs: list[WorkflowRunView], report: ReconciliationReport) -> None:
        """Repair runs left ``in_progress`` by a crash with no live owner."""

        live_skills = {
            session.skill_name
            for session in self.repository.list_open_sessions()
            if self._pid_alive(session.pid)
        }
        running = self.registry.running_agent_ids()
        for run in runs:
            if run.skill_name in live_skills or any(
                agent_belongs_to(agent_id, run.skill_name) for agent_id in running
            ):
                continue
            try:
                steps = self.repository.get_workflow_steps(run.skill_name)
                stale = [step for step in steps if step.status is WorkflowStatus.IN_PROGRESS]
                if run.status is not WorkflowStatus.IN_PROGRESS and not stale:
                    continue
                self._repair_run(run, stale)
                report.repaired_runs.append(run.skill_name)
            except (SkillBuilderError, OSError) as error:
                report.failures.append(f"run {run.skill_name}: {error}")

    def _repair_run(self, run: WorkflowRunView, stale: list[WorkflowStepView]) -> None:
        skill_dir = self.skills_root / run.skill_name
        completed: set[int] = set()
        for step in stale:
            done = _outputs_exist(skill_dir, run.skill_name, step.step_id, step.variant)
            status = WorkflowStatus.COMPLETED if done else WorkflowStatus.PENDING
            self.repository.save_workflow_step(
                run.skill_name,
                step.step_id,
                status,
                variant=step.variant,
            )
            if done and not step.variant:
                completed.add(step.step_id)

        current_step = (
            next_step_id(run.current_step) if run.current_step in completed else run.current_step
        )
        self.repository.save_workflow_run(
            run.skill_name,
            current_step=current_step,
            status=WorkflowStatus.PENDING,
        )
        logger.warning(
            "Repaired stale run %s: now pending at step %s",
            run.skill_name,
            current_step,
        )

    def _resolve_ghosts_and_discoveries(
        self,
        runs: list[WorkflowRunView],
        report: ReconciliationReport,
    ) -> None:
        if not self.skills_root.is_dir():
            logger.warning(
                "Skills directory %s does not exist; skipping ghost and discovery checks",
                self.skills_root,
            )
            return

        on_disk = {
            path.name
            for path in self.skills_root.iterdir()
            if path.is_dir() and not path.name.startswith(".")
        }
        tracked = {run.skill_name for run in runs}

        for ghost in sorted(tracked - on_disk):
            if not self.prune_ghosts:
                report.flagged_ghosts.append(ghost)
                continue
            try:
                self.repository.delete_workflow_run(ghost)
            except SkillBuilderError as error:
                report.failures.append(f"ghost {ghost}: {error}")
            else:
                report.pruned_ghosts.append(ghost)
                logger.info("Pruned workflow run %s with no skill directory", ghost)

        for name in sorted(on_disk - tracked):
            report.discoveries.append(self._describe(name, self.skills_root / name))

    def _commit_untracked(self, report: ReconciliationReport) -> None:
        if self.vcs is None or not self.skills_root.is_dir():
            return
        try:
            self.vcs.ensure_repo(self.skills_root)
            untracked = self.vcs.get_untracked_dirs(self.skills_root)
            if not untracked:
                return
            commit_id = self.vcs.commit_all(
                self.skills_root,
                f"Auto-commit untracked skills: {', '.join(untracked)}",
            )
        except (SkillBuilderError, OSError) as error:
            report.failures.append(f"auto-commit: {error}")
            return
        report.committed_dirs.extend(untracked)
        report.commit_id = commit_id

    def _describe(self, skill_name: str, skill_dir: Path) -> Discovery:
        discovery = Discovery(
            skill_name=skill_name,
            path=skill_dir,
            has_skill_md=(skill_dir / "SKILL.md").is_file(),
        )
        state_path = skill_dir / WORKFLOW_STATE_FILE
        if state_path.is_file():
            try:
                state = parse_workflow_state(state_path.read_text("utf-8"))
            except (OSError, UnicodeDecodeError) as error:
                logger.warning("Could not read %s: %s", state_path, error)
            else:
                discovery.suggested_step = state.current_step_number
                discovery.suggested_domain = state.domain
        return discovery


def _outputs_exist(skill_dir: Path, skill_name: str, step_id: int, variant: str) -> bool:
    if step_id == PARALLEL_STEP_ID and variant:
        files = tuple(config.output_file for config in PARALLEL_PAIR if config.variant == variant)
    else:
        files = step_output_files(step_id, skill_name)
    return bool(files) and all((skill_dir / name).is_file() for name in files)
