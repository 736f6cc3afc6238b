from __future__ import annotations

import asyncio
import re
import zipfile
from pathlib import Path

import allure
import pytest

from skill_builder.agents import AgentInvocation, AgentRegistry
from skill_builder.config import BUNDLED_PROMPTS_DIR
from skill_builder.errors import (
    PathTraversalRejected,
    StepNotConfigured,
    WorkspacePreparationError,
)
from skill_builder.models import AppSettings, WorkflowStatus
from skill_builder.workflow.engine import WorkflowEngine, agent_belongs_to, make_agent_id
from skill_builder.workflow.steps import LAST_STEP_ID, step_output_files

pytestmark = [
    allure.epic("Skill Workflow"),
    allure.feature("Workflow Engine"),
]


def _engine(
    repository,
    handler,
    worker_command,
    *,
    env: dict[str, str] | None = None,
    api_key: str | None = "test-key",
    prompts_source_dir: Path = BUNDLED_PROMPTS_DIR,
) -> WorkflowEngine:
    registry = AgentRegistry(worker_command=worker_command, event_handler=handler, env=env)
    return WorkflowEngine(
        registry=registry,
        repository=repository,
        prompts_source_dir=prompts_source_dir,
        api_key=api_key,
    )


def _statuses(repository, skill_name: str) -> dict[str, WorkflowStatus]:
    return {
        f"{step.step_id}{step.variant}": step.status
        for step in repository.get_workflow_steps(skill_name)
    }


def test_run_step_writes_output_and_advances_run(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(repository, recorder, echo_command)

    result = asyncio.run(engine.run_step("demo", 0, "retail analytics", workspace))

    assert result.success is True
    assert re.fullmatch(r"demo-step0-\d+", result.agent_id)
    output = workspace / "skills" / "demo" / "context" / "clarifications-concepts.md"
    assert output.is_file()
    text = output.read_text("utf-8")
    assert "prompts/01-research-domain-concepts.md" in text
    assert "The domain is: retail analytics." in text
    assert (workspace / "prompts" / "shared-context.md").is_file()

    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.current_step == 1
    assert run.status is WorkflowStatus.PENDING
    assert run.domain == "retail analytics"
    assert _statuses(repository, "demo") == {"0": WorkflowStatus.COMPLETED}
    assert recorder.exits == [(result.agent_id, True, False)]


def test_failed_step_marks_run_and_step_failed(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(
        repository,
        recorder,
        echo_command,
        env={"SKILL_BUILDER_ECHO_FAIL_ON": "01-research"},
    )

    result = asyncio.run(engine.run_step("demo", 0, "retail", workspace))

    assert result.success is False
    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.status is WorkflowStatus.FAILED
    assert run.current_step == 0
    assert _statuses(repository, "demo") == {"0": WorkflowStatus.FAILED}


@pytest.mark.parametrize(
    ("step_id", "hint"),
    [
        (2, "run_parallel_pair"),
        (4, "human review gate"),
        (9, "package_skill"),
        (12, "Did you mean step 8?"),
    ],
)
def test_unknown_step_fails_fast_with_valid_ids(
    repository,
    recorder,
    echo_command,
    workspace: Path,
    step_id: int,
    hint: str,
) -> None:
    engine = _engine(repository, recorder, echo_command)

    with pytest.raises(StepNotConfigured, match=hint) as excinfo:
        asyncio.run(engine.run_step("demo", step_id, "retail", workspace))

    assert excinfo.value.valid_step_ids == (0, 3, 5, 6, 7, 8)
    assert repository.get_workflow_run("demo") is None
    assert not (workspace / "prompts").exists()


def test_missing_prompt_files_fail_workspace_preparation(
    tmp_path: Path,
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    prompts = tmp_path / "prompts-src"
    prompts.mkdir()
    (prompts / "shared-context.md").write_text("# shared\n", "utf-8")
    engine = _engine(repository, recorder, echo_command, prompts_source_dir=prompts)

    with pytest.raises(WorkspacePreparationError, match="01-research-domain-concepts.md"):
        asyncio.run(engine.run_step("demo", 0, "retail", workspace))

    assert repository.get_workflow_run("demo") is None
    assert recorder.exits == []


def test_api_key_falls_back_to_stored_settings(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(repository, recorder, echo_command, api_key=None)

    with pytest.raises(WorkspacePreparationError, match="API key"):
        asyncio.run(engine.run_step("demo", 0, "retail", workspace))

    repository.write_app_settings(AppSettings(anthropic_api_key="stored-key"))
    assert engine.resolve_api_key() == "stored-key"
    assert asyncio.run(engine.run_step("demo", 0, "retail", workspace)).success is True


def test_parallel_pair_failure_keeps_sibling_success(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(
        repository,
        recorder,
        echo_command,
        env={"SKILL_BUILDER_ECHO_FAIL_ON": "03a-research"},
    )

    result = asyncio.run(engine.run_parallel_pair("demo", "retail", workspace))

    assert result.success is False
    by_variant = {member.variant: member for member in result.members}
    assert by_variant["a"].success is False
    assert by_variant["b"].success is True
    assert by_variant["a"].agent_id != by_variant["b"].agent_id

    skill_dir = workspace / "skills" / "demo"
    assert (skill_dir / "context" / "clarifications-data.md").is_file()
    assert not (skill_dir / "context" / "clarifications-patterns.md").exists()
    assert _statuses(repository, "demo") == {
        "2": WorkflowStatus.FAILED,
        "2a": WorkflowStatus.FAILED,
        "2b": WorkflowStatus.COMPLETED,
    }
    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.status is WorkflowStatus.FAILED
    assert run.current_step == 2


def test_parallel_pair_success_advances_to_merge(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(repository, recorder, echo_command)

    result = asyncio.run(engine.run_parallel_pair("demo", "retail", workspace))

    assert result.success is True
    assert sorted(member.variant for member in result.members) == ["a", "b"]
    assert set(_statuses(repository, "demo").values()) == {WorkflowStatus.COMPLETED}
    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.current_step == 3
    assert run.status is WorkflowStatus.PENDING
    assert len(recorder.exits) == 2


def _seed_all_outputs(skill_dir: Path, skill_name: str) -> dict[int, list[Path]]:
    outputs: dict[int, list[Path]] = {}
    for step_id in range(LAST_STEP_ID + 1):
        outputs[step_id] = []
        for relative in step_output_files(step_id, skill_name):
            path = skill_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"step {step_id}\n", "utf-8")
            outputs[step_id].append(path)
    references = skill_dir / "references" / "modeling.md"
    references.parent.mkdir(parents=True, exist_ok=True)
    references.write_text("# Modeling\n", "utf-8")
    return outputs


def test_reset_from_removes_later_outputs_and_rewinds_run(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    skill_dir = workspace / "skills" / "demo"
    outputs = _seed_all_outputs(skill_dir, "demo")
    for step_id in range(LAST_STEP_ID + 1):
        repository.save_workflow_step("demo", step_id, WorkflowStatus.COMPLETED)
    repository.save_workflow_run(
        "demo",
        current_step=LAST_STEP_ID,
        status=WorkflowStatus.COMPLETED,
        domain="retail",
    )
    engine = _engine(repository, recorder, echo_command)

    removed = engine.reset_from("demo", workspace, 5)

    for step_id, paths in outputs.items():
        for path in paths:
            assert path.exists() is (step_id < 5), path
    assert not (skill_dir / "references").exists()
    assert skill_dir / "references" in removed

    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.current_step == 5
    assert run.status is WorkflowStatus.PENDING
    statuses = _statuses(repository, "demo")
    assert all(statuses[str(step)] is WorkflowStatus.COMPLETED for step in range(5))
    assert all(
        statuses[str(step)] is WorkflowStatus.PENDING for step in range(5, LAST_STEP_ID + 1)
    )


def test_reset_from_tolerates_missing_files_and_directory(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(repository, recorder, echo_command)
    repository.save_workflow_run("ghost", current_step=6, status=WorkflowStatus.FAILED)

    assert engine.reset_from("ghost", workspace, 3) == []

    run = repository.get_workflow_run("ghost")
    assert run is not None
    assert run.current_step == 3
    assert run.status is WorkflowStatus.PENDING

    (workspace / "skills" / "sparse").mkdir(parents=True)
    assert engine.reset_from("sparse", workspace, 0) == []


def test_reset_from_rejects_path_traversal(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    victim = workspace / "escape"
    victim.mkdir()
    (victim / "SKILL.md").write_text("keep me\n", "utf-8")
    engine = _engine(repository, recorder, echo_command)

    with pytest.raises(PathTraversalRejected):
        engine.reset_from("../escape", workspace, 6)

    assert (victim / "SKILL.md").is_file()


def test_review_gate_completion_advances_run(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    engine = _engine(repository, recorder, echo_command)
    repository.save_workflow_run("demo", current_step=1, status=WorkflowStatus.PENDING)

    engine.complete_review_step("demo", 1)

    state = engine.get_state("demo")
    assert state.run is not None
    assert state.run.current_step == 2
    assert [(step.step_id, step.status) for step in state.steps] == [
        (1, WorkflowStatus.COMPLETED),
    ]
    with pytest.raises(StepNotConfigured, match="not a human review gate"):
        engine.complete_review_step("demo", 3)


def test_package_skill_zips_skill_md_and_references(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    skill_dir = workspace / "skills" / "demo"
    (skill_dir / "references").mkdir(parents=True)
    (skill_dir / "context").mkdir()
    (skill_dir / "SKILL.md").write_text("# Demo\n", "utf-8")
    (skill_dir / "references" / "entities.md").write_text("# Entities\n", "utf-8")
    (skill_dir / "context" / "decisions.md").write_text("# Decisions\n", "utf-8")
    engine = _engine(repository, recorder, echo_command)

    result = engine.package_skill("demo", workspace)

    assert result.file_path == skill_dir / "demo.skill"
    assert result.size_bytes > 0
    with zipfile.ZipFile(result.file_path) as archive:
        assert sorted(archive.namelist()) == ["SKILL.md", "references/entities.md"]
    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.status is WorkflowStatus.COMPLETED
    assert run.current_step == LAST_STEP_ID


def test_package_skill_requires_skill_md(
    repository,
    recorder,
    echo_command,
    workspace: Path,
) -> None:
    (workspace / "skills" / "demo").mkdir(parents=True)
    engine = _engine(repository, recorder, echo_command)

    with pytest.raises(WorkspacePreparationError, match="SKILL.md"):
        engine.package_skill("demo", workspace)


def test_agent_ids_are_scoped_to_their_skill() -> None:
    agent_id = make_agent_id("sales", "step2a", now_ms=1_700_000_000_000)

    assert agent_id == "sales-step2a-1700000000000"
    assert agent_belongs_to(agent_id, "sales") is True
    assert agent_belongs_to("sales-ops-step0-1", "sales") is False
    assert agent_belongs_to("sales-ops-step0-1", "sales-ops") is True


def test_reset_from_refuses_while_agents_run(
    repository,
    recorder,
    sleeper_command,
    workspace: Path,
) -> None:
    skill_dir = workspace / "skills" / "demo" / "context"
    skill_dir.mkdir(parents=True)
    output = skill_dir / "clarifications-concepts.md"
    output.write_text("# kept\n", "utf-8")
    repository.save_workflow_run("demo", current_step=1, status=WorkflowStatus.PENDING)
    engine = _engine(repository, recorder, sleeper_command)

    async def scenario() -> None:
        invocation = AgentInvocation(prompt="x", model="sonnet", api_key="k", cwd=str(workspace))
        await engine.registry.spawn(make_agent_id("demo", "step3"), invocation)
        try:
            with pytest.raises(WorkspacePreparationError, match="agents are running"):
                engine.reset_from("demo", workspace, 0)
        finally:
            await engine.registry.cancel_all()

    asyncio.run(scenario())

    assert output.is_file()
    run = repository.get_workflow_run("demo")
    assert run is not None
    assert run.current_step == 1
