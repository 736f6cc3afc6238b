"""Error taxonomy shared by the registry, workflow engine, and reconciliation."""

from __future__ import annotations

from collections.abc import Sequence


class SkillBuilderError(RuntimeError):
    """Base class for orchestrator errors surfaced to callers."""


class SpawnFailed(SkillBuilderError):
    """Worker executable could not be located, started, or configured."""


class DuplicateAgent(SkillBuilderError):
    """An agent with the same id is already registered."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent '{agent_id}' is already running")
        self.agent_id = agent_id


class AgentNotFound(SkillBuilderError):
    """No live registry entry exists for the agent id."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent '{agent_id}' not found")
        self.agent_id = agent_id


class AgentTerminationFailed(SkillBuilderError):
    """The worker process refused to die; its registry entry is kept."""

    def __init__(self, agent_id: str, reason: str) -> None:
        super().__init__(f"Failed to kill agent '{agent_id}': {reason}")
        self.agent_id = agent_id


class StepNotConfigured(SkillBuilderError):
    """Step id has no worker configuration."""

    def __init__(self, step_id: int, *, valid_step_ids: Sequence[int], hint: str) -> None:
        valid = ", ".join(str(value) for value in valid_step_ids)
        super().__init__(f"Unknown step_id {step_id}. {hint} Valid step ids: {valid}.")
        self.step_id = step_id
        self.valid_step_ids = tuple(valid_step_ids)
        self.hint = hint


class WorkspacePreparationError(SkillBuilderError):
    """Workspace is missing files or settings required to run a step."""


class PersistenceError(SkillBuilderError):
    """Workflow store read/write failed; the enclosing operation is aborted."""


class PathTraversalRejected(SkillBuilderError):
    """A skill name resolved outside its expected parent directory."""

    def __init__(self, name: str, parent: object) -> None:
        super().__init__(f"Skill name {name!r} escapes {parent}")
        self.name = name


class ReconciliationPartialFailure(SkillBuilderError):
    """One or more reconciliation items could not be resolved."""

    def __init__(self, failures: Sequence[str]) -> None:
        super().__init__(
            f"Reconciliation finished with {len(failures)} failure(s): " + "; ".join(failures),
        )
        self.failures = tuple(failures)


class LayoutMigrationError(SkillBuilderError):
    """Workspace layout migration refused to run or was rolled back."""


class VcsError(SkillBuilderError):
    """Version-control collaborator failure."""
