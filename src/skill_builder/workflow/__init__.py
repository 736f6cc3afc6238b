"""Workflow step catalog, engine, and skill packaging."""

from skill_builder.workflow.engine import ParallelRunResult, StepRunResult, WorkflowEngine
from skill_builder.workflow.steps import (
    LAST_STEP_ID,
    StepConfig,
    get_step_config,
    parallel_pair_configs,
    step_output_files,
)

__all__ = [
    "LAST_STEP_ID",
    "ParallelRunResult",
    "StepConfig",
    "StepRunResult",
    "WorkflowEngine",
    "get_step_config",
    "parallel_pair_configs",
    "step_output_files",
]
