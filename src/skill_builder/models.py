"""Domain models for workflow runs, steps, sessions, and app settings."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum


class WorkflowStatus(str, Enum):
    """Durable lifecycle states shared by runs and steps."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SkillSource(str, Enum):
    """How a tracked skill came to exist."""

    BUILDER = "builder"
    IMPORTED = "imported"


@dataclass(slots=True)
class WorkflowRunView:
    """Persisted progress of one skill through the step sequence."""

    skill_name: str
    domain: str
    current_step: int
    status: WorkflowStatus
    skill_source: SkillSource
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkflowStepView:
    """Status of one step (or one member of the parallel pair)."""

    skill_name: str
    step_id: int
    variant: str
    status: WorkflowStatus
    updated_at: datetime


@dataclass(slots=True)
class WorkflowSessionView:
    """A UI/CLI session working on a skill."""

    session_id: str
    skill_name: str
    pid: int
    is_open: bool
    started_at: datetime
    closed_at: datetime | None


@dataclass(slots=True)
class WorkflowStateView:
    """Run plus step statuses for display."""

    run: WorkflowRunView | None
    steps: list[WorkflowStepView] = field(default_factory=list)


@dataclass(slots=True)
class AppSettings:
    """User settings persisted as a single JSON blob."""

    anthropic_api_key: str | None = None
    workspace_path: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> AppSettings:
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("App settings blob must be a JSON object.")
        return cls(
            anthropic_api_key=parsed.get("anthropic_api_key"),
            workspace_path=parsed.get("workspace_path"),
        )
