"""Static workflow step catalog."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from skill_builder.errors import StepNotConfigured

DEFAULT_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep", "Bash", "Task")
LAST_STEP_ID = 9
PARALLEL_STEP_ID = 2


class StepKind(str, Enum):
    AGENT = "agent"
    PARALLEL = "parallel"
    REVIEW = "review"
    PACKAGE = "package"


@dataclass(frozen=True, slots=True)
class StepConfig:
    """Execution parameters for one worker-driven step."""

    step_id: int
    name: str
    model: str
    prompt_template: str
    output_file: str
    allowed_tools: tuple[str, ...] = DEFAULT_TOOLS
    max_turns: int = 50
    variant: str = ""

    @property
    def label(self) -> str:
        return f"step{self.step_id}{self.variant}"


STEP_CONFIGS: dict[int, StepConfig] = {
    0: StepConfig(
        step_id=0,
        name="Research Domain Concepts",
        model="sonnet",
        prompt_template="01-research-domain-concepts.md",
        output_file="context/clarifications-concepts.md",
    ),
    3: StepConfig(
        step_id=3,
        name="Merge Clarifications",
        model="haiku",
        prompt_template="04-merge-clarifications.md",
        output_file="context/clarifications.md",
        max_turns=30,
    ),
    5: StepConfig(
        step_id=5,
        name="Reasoning",
        model="opus",
        prompt_template="06-reasoning-agent.md",
        output_file="context/decisions.md",
        max_turns=100,
    ),
    6: StepConfig(
        step_id=6,
        name="Build",
        model="sonnet",
        prompt_template="07-build-agent.md",
        output_file="SKILL.md",
        max_turns=80,
    ),
    7: StepConfig(
        step_id=7,
        name="Validate",
        model="sonnet",
        prompt_template="08-validate-agent.md",
        output_file="context/agent-validation-log.md",
    ),
    8: StepConfig(
        step_id=8,
        name="Test",
        model="sonnet",
        prompt_template="09-test-agent.md",
        output_file="context/test-skill.md",
    ),
}

PARALLEL_PAIR: tuple[StepConfig, StepConfig] = (
    StepConfig(
        step_id=PARALLEL_STEP_ID,
        name="Research Business Patterns",
        model="sonnet",
        prompt_template="03a-research-business-patterns.md",
        output_file="context/clarifications-patterns.md",
        variant="a",
    ),
    StepConfig(
        step_id=PARALLEL_STEP_ID,
        name="Research Data Modeling",
        model="sonnet",
        prompt_template="03b-research-data-modeling.md",
        output_file="context/clarifications-data.md",
        variant="b",
    ),
)

STEP_KINDS: dict[int, StepKind] = {
    0: StepKind.AGENT,
    1: StepKind.REVIEW,
    2: StepKind.PARALLEL,
    3: StepKind.AGENT,
    4: StepKind.REVIEW,
    5: StepKind.AGENT,
    6: StepKind.AGENT,
    7: StepKind.AGENT,
    8: StepKind.AGENT,
    9: StepKind.PACKAGE,
}

STEP_NAMES: dict[int, str] = {
    **{step_id: config.name for step_id, config in STEP_CONFIGS.items()},
    1: "Review Concepts",
    2: "Research Patterns & Data Modeling",
    4: "Review Clarifications",
    9: "Package",
}

# Directories a step produces in addition to its output files.
_STEP_OUTPUT_DIRS: dict[int, tuple[str, ...]] = {6: ("references",)}


def get_step_config(step_id: int) -> StepConfig:
    """Resolve a worker step; other ids name the nearest valid alternative."""

    config = STEP_CONFIGS.get(step_id)
    if config is not None:
        return config

    valid = sorted(STEP_CONFIGS)
    kind = STEP_KINDS.get(step_id)
    if kind is StepKind.PARALLEL:
        hint = f"Step {step_id} runs as a parallel pair; use run_parallel_pair."
    elif kind is StepKind.REVIEW:
        hint = f"Step {step_id} is a human review gate with no agent."
    elif kind is StepKind.PACKAGE:
        hint = f"Step {step_id} is packaging; use package_skill."
    else:
        nearest = min(valid, key=lambda candidate: (abs(candidate - step_id), candidate))
        hint = f"Did you mean step {nearest}?"
    raise StepNotConfigured(step_id, valid_step_ids=valid, hint=hint)


def step_kind(step_id: int) -> StepKind:
    try:
        return STEP_KINDS[step_id]
    except KeyError:
        raise StepNotConfigured(
            step_id,
            valid_step_ids=sorted(STEP_KINDS),
            hint=f"Steps run from 0 to {LAST_STEP_ID}.",
        ) from None


def parallel_pair_configs() -> tuple[StepConfig, StepConfig]:
    return PARALLEL_PAIR


def step_output_files(step_id: int, skill_name: str = "") -> tuple[str, ...]:
    """Declared output files for a step, relative to the skill directory."""

    kind = STEP_KINDS.get(step_id)
    if kind is StepKind.AGENT:
        return (STEP_CONFIGS[step_id].output_file,)
    if kind is StepKind.PARALLEL:
        return tuple(config.output_file for config in PARALLEL_PAIR)
    if kind is StepKind.PACKAGE and skill_name:
        return (f"{skill_name}.skill",)
    return ()


def step_output_dirs(step_id: int) -> tuple[str, ...]:
    return _STEP_OUTPUT_DIRS.get(step_id, ())


def next_step_id(step_id: int) -> int:
    return min(step_id + 1, LAST_STEP_ID)
