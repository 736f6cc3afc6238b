"""Parser for the ``workflow.md`` state section agents keep in a skill directory."""

from __future__ import annotations

import re
from dataclasses import dataclass

WORKFLOW_STATE_FILE = "workflow.md"

_FIELD_PATTERN = re.compile(r"\*\*([^*]+)\*\*:\s*(.+)")
_STEP_NUMBER_PATTERN = re.compile(r"step\s*(\d+)", re.IGNORECASE)

_KEYS = {
    "skill name": "skill_name",
    "domain": "domain",
    "current step": "current_step",
    "status": "status",
    "completed steps": "completed_steps",
    "timestamp": "timestamp",
    "notes": "notes",
}


@dataclass(slots=True)
class WorkflowStateFile:
    skill_name: str | None = None
    domain: str | None = None
    current_step: str | None = None
    status: str | None = None
    completed_steps: str | None = None
    timestamp: str | None = None
    notes: str | None = None

    @property
    def current_step_number(self) -> int | None:
        """Step id from 1-based labels: ``Step 3: Research Patterns`` is step 2."""

        if self.current_step is None:
            return None
        match = _STEP_NUMBER_PATTERN.search(self.current_step)
        if match is None:
            return None
        label = int(match.group(1))
        return label - 1 if label >= 1 else None


def parse_workflow_state(content: str) -> WorkflowStateFile:
    state = WorkflowStateFile()
    for match in _FIELD_PATTERN.finditer(content):
        attribute = _KEYS.get(match.group(1).strip().lower())
        if attribute is not None:
            setattr(state, attribute, match.group(2).strip())
    return state
