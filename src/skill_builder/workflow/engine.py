"""Workflow engine: runs steps through the process registry and persists progress."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from skill_builder.agents.invocation import AgentInvocation
from skill_builder.agents.registry import AgentOutcome, AgentRegistry
from skill_builder.errors import StepNotConfigured, WorkspacePreparationError
from skill_builder.models import WorkflowStateView, WorkflowStatus
from skill_builder.paths import resolve_skill_dir, skills_root
from skill_builder.storage.repository import WorkflowRepository
from skill_builder.workflow.packaging import PackageResult, create_skill_zip
from skill_builder.workflow.prompts import build_prompt, deploy_prompts, require_prompts
from skill_builder.workflow.steps import (
    LAST_STEP_ID,
    PARALLEL_STEP_ID,
    StepConfig,
    StepKind,
    get_step_config,
    next_step_id,
    parallel_pair_configs,
    step_kind,
    step_output_dirs,
    step_output_files,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepRunResult:
    """Outcome of one worker-driven step (or one member of the parallel pair)."""

    agent_id: str
    step_id: int
    success: bool
    variant: str = ""
    exit_code: int | None = None
    cancelled: bool = False


@dataclass(slots=True)
class ParallelRunResult:
    members: list[StepRunResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.members) and all(member.success for member in self.members)


def make_agent_id(skill_name: str, label: str, *, now_ms: int | None = None) -> str:
    """Registry id unique across repeated runs of the same step."""

    timestamp = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    return f"{skill_name}-{label}-{timestamp}"


def agent_belongs_to(agent_id: str, skill_name: str) -> bool:
    """True when ``agent_id`` was minted by :func:`make_agent_id` for ``skill_name``."""

    return re.fullmatch(rf"{re.escape(skill_name)}-step\d+[a-z]?-\d+", agent_id) is not None


class WorkflowEngine:
    """Drives one skill through the step catalog.

    Status rows are written before a worker is spawned and again after it
    exits, so a crash in between leaves an ``in_progress`` row for
    reconciliation to repair.
    """

    def __init__(
        self,
        *,
        registry: AgentRegistry,
        repository: WorkflowRepository,
        prompts_source_dir: Path,
        permission_mode: str = "bypassPermissions",
        api_key: str | None = None,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.prompts_source_dir = prompts_source_dir
        self.permission_mode = permission_mode
        self._api_key = api_key

    async def run_step(
        self,
        skill_name: str,
        step_id: int,
        domain: str,
        workspace: Path,
    ) -> StepRunResult:
        """Run one agent step to completion and persist its outcome."""

        config = get_step_config(step_id)
        self._prepare_workspace(workspace, skill_name, config.prompt_template)
        api_key = self.resolve_api_key()

        self.repository.save_workflow_run(
            skill_name,
            current_step=step_id,
            status=WorkflowStatus.IN_PROGRESS,
            domain=domain,
        )
        self.repository.save_workflow_step(skill_name, step_id, WorkflowStatus.IN_PROGRESS)

        try:
            result = await self._run_agent(config, skill_name, domain, workspace, api_key)
        except Exception:
            self._record_failure(skill_name, step_id)
            raise

        if result.success:
            self.repository.save_workflow_step(skill_name, step_id, WorkflowStatus.COMPLETED)
            self.repository.save_workflow_run(
                skill_name,
                current_step=next_step_id(step_id),
                status=WorkflowStatus.PENDING,
            )
        elif result.cancelled:
            self._record_cancellation(skill_name, step_id)
        else:
            self._record_failure(skill_name, step_id)
        logger.info(
            "Step %s for skill %s finished (agent_id=%s success=%s)",
            step_id,
            skill_name,
            result.agent_id,
            result.success,
        )
        return result

    async def run_parallel_pair(
        self,
        skill_name: str,
        domain: str,
        workspace: Path,
    ) -> ParallelRunResult:
        """Run both research variants concurrently; neither cancels the other.

        Member rows are persisted as they finish. If a member could not be
        spawned, its error is re-raised after the other member is done.
        """

        configs = parallel_pair_configs()
        self._prepare_workspace(
            workspace,
            skill_name,
            *(config.prompt_template for config in configs),
        )
        api_key = self.resolve_api_key()

        self.repository.save_workflow_run(
            skill_name,
            current_step=PARALLEL_STEP_ID,
            status=WorkflowStatus.IN_PROGRESS,
            domain=domain,
        )
        self.repository.save_workflow_step(
            skill_name,
            PARALLEL_STEP_ID,
            WorkflowStatus.IN_PROGRESS,
        )
        for config in configs:
            self.repository.save_workflow_step(
                skill_name,
                PARALLEL_STEP_ID,
                WorkflowStatus.IN_PROGRESS,
                variant=config.variant,
            )

        outcomes = await asyncio.gather(
            *(
                self._run_member(config, skill_name, domain, workspace, api_key)
                for config in configs
            ),
            return_exceptions=True,
        )

        result = ParallelRunResult(
            members=[outcome for outcome in outcomes if isinstance(outcome, StepRunResult)],
        )
        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]

        if result.success and not errors:
            self.repository.save_workflow_step(
                skill_name,
                PARALLEL_STEP_ID,
                WorkflowStatus.COMPLETED,
            )
            self.repository.save_workflow_run(
                skill_name,
                current_step=next_step_id(PARALLEL_STEP_ID),
                status=WorkflowStatus.PENDING,
            )
        else:
            self._record_failure(skill_name, PARALLEL_STEP_ID)
            logger.warning(
                "Parallel research for skill %s failed (%s of %s members succeeded)",
                skill_name,
                sum(1 for member in result.members if member.success),
                len(configs),
            )

        if errors:
            raise errors[0]
        return result

    def reset_from(self, skill_name: str, workspace: Path, from_step_id: int) -> list[Path]:
        """Delete outputs of steps ``>= from_step_id`` and rewind the run.

        Returns the paths that were removed. A missing skill directory skips
        the file cleanup; the stored run is still rewound.
        """

        step_kind(from_step_id)
        skill_dir = resolve_skill_dir(skills_root(workspace), skill_name)
        if self.registry.is_any_running():
            raise WorkspacePreparationError(
                f"Cannot reset {skill_name} while agents are running: "
                f"{', '.join(self.registry.running_agent_ids())}",
            )

        removed: list[Path] = []
        if skill_dir.is_dir():
            for step_id in range(from_step_id, LAST_STEP_ID + 1):
                for relative in step_output_files(step_id, skill_name):
                    path = skill_dir / relative
                    if path.is_file():
                        path.unlink()
                        removed.append(path)
                for relative in step_output_dirs(step_id):
                    path = skill_dir / relative
                    if path.is_dir():
                        shutil.rmtree(path)
                        removed.append(path)
        else:
            logger.info("Skill directory %s does not exist; skipping file cleanup", skill_dir)

        self.repository.reset_workflow_from(skill_name, from_step_id)
        logger.info(
            "Reset skill %s from step %s (%s artifact(s) removed)",
            skill_name,
            from_step_id,
            len(removed),
        )
        return removed

    def complete_review_step(self, skill_name: str, step_id: int) -> None:
        """Mark a human review gate done and advance the run."""

        if step_kind(step_id) is not StepKind.REVIEW:
            raise StepNotConfigured(
                step_id,
                valid_step_ids=[
                    candidate
                    for candidate in range(LAST_STEP_ID + 1)
                    if step_kind(candidate) is StepKind.REVIEW
                ],
                hint=f"Step {step_id} is not a human review gate.",
            )
        self.repository.save_workflow_step(skill_name, step_id, WorkflowStatus.COMPLETED)
        self.repository.save_workflow_run(
            skill_name,
            current_step=next_step_id(step_id),
            status=WorkflowStatus.PENDING,
        )

    def package_skill(self, skill_name: str, workspace: Path) -> PackageResult:
        """Zip the built skill into ``<skill>/<skill>.skill`` and complete the run."""

        skill_dir = resolve_skill_dir(skills_root(workspace), skill_name)
        if not (skill_dir / "SKILL.md").is_file():
            raise WorkspacePreparationError(f"Nothing to package: {skill_dir / 'SKILL.md'} is missing")

        (output_name,) = step_output_files(LAST_STEP_ID, skill_name)
        result = create_skill_zip(skill_dir, skill_dir / output_name)
        self.repository.save_workflow_step(skill_name, LAST_STEP_ID, WorkflowStatus.COMPLETED)
        self.repository.save_workflow_run(
            skill_name,
            current_step=LAST_STEP_ID,
            status=WorkflowStatus.COMPLETED,
        )
        logger.info("Packaged skill %s (%s bytes)", skill_name, result.size_bytes)
        return result

    def get_state(self, skill_name: str) -> WorkflowStateView:
        return WorkflowStateView(
            run=self.repository.get_workflow_run(skill_name),
            steps=self.repository.get_workflow_steps(skill_name),
        )

    async def _run_member(  # noqa: PLR0913
        self,
        config: StepConfig,
        skill_name: str,
        domain: str,
        workspace: Path,
        api_key: str,
    ) -> StepRunResult:
        try:
            result = await self._run_agent(config, skill_name, domain, workspace, api_key)
        except Exception:
            self.repository.save_workflow_step(
                skill_name,
                config.step_id,
                WorkflowStatus.FAILED,
                variant=config.variant,
            )
            raise
        self.repository.save_workflow_step(
            skill_name,
            config.step_id,
            WorkflowStatus.COMPLETED if result.success else WorkflowStatus.FAILED,
            variant=config.variant,
        )
        return result

    async def _run_agent(  # noqa: PLR0913
        self,
        config: StepConfig,
        skill_name: str,
        domain: str,
        workspace: Path,
        api_key: str,
    ) -> StepRunResult:
        invocation = AgentInvocation(
            prompt=build_prompt(
                prompt_template=config.prompt_template,
                output_file=config.output_file,
                skill_name=skill_name,
                domain=domain,
            ),
            model=config.model,
            api_key=api_key,
            cwd=str(workspace),
            allowed_tools=config.allowed_tools,
            max_turns=config.max_turns,
            permission_mode=self.permission_mode,
        )
        agent_id = make_agent_id(skill_name, config.label)
        logger.info(
            "Starting %s (%s) for skill %s as %s",
            config.label,
            config.name,
            skill_name,
            agent_id,
        )
        handle = await self.registry.spawn(agent_id, invocation)
        outcome: AgentOutcome = await handle.wait()
        return StepRunResult(
            agent_id=agent_id,
            step_id=config.step_id,
            success=outcome.success,
            variant=config.variant,
            exit_code=outcome.exit_code,
            cancelled=outcome.cancelled,
        )

    def _prepare_workspace(self, workspace: Path, skill_name: str, *templates: str) -> None:
        skill_dir = resolve_skill_dir(skills_root(workspace), skill_name)
        deploy_prompts(self.prompts_source_dir, workspace)
        require_prompts(workspace, *templates)
        try:
            skill_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise WorkspacePreparationError(
                f"Failed to create skill directory {skill_dir}: {error}",
            ) from error

    def resolve_api_key(self) -> str:
        if self._api_key:
            return self._api_key
        stored = self.repository.read_app_settings().anthropic_api_key
        if not stored:
            raise WorkspacePreparationError(
                "Anthropic API key is not configured; set ANTHROPIC_API_KEY or "
                "`skill-builder settings set --api-key`.",
            )
        return stored

    def _record_failure(self, skill_name: str, step_id: int) -> None:
        self.repository.save_workflow_step(skill_name, step_id, WorkflowStatus.FAILED)
        self.repository.save_workflow_run(
            skill_name,
            current_step=step_id,
            status=WorkflowStatus.FAILED,
        )

    def _record_cancellation(self, skill_name: str, step_id: int) -> None:
        self.repository.save_workflow_step(skill_name, step_id, WorkflowStatus.PENDING)
        self.repository.save_workflow_run(
            skill_name,
            current_step=step_id,
            status=WorkflowStatus.PENDING,
        )
