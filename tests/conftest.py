"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest

from skill_builder.storage.repository import WorkflowRepository

ECHO_AGENT_COMMAND = (sys.executable, "-m", "skill_builder.agents.echo_agent")
SLEEPER_COMMAND = (
    sys.executable,
    "-c",
    "import sys, time; sys.stdin.readline(); time.sleep(60)",
)


class RecordingHandler:
    """Event handler that keeps everything it is told."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.exits: list[tuple[str, bool, bool]] = []

    def on_message(self, agent_id: str, line: str) -> None:
        self.messages.append((agent_id, line))

    def on_exit(self, agent_id: str, *, success: bool, cancelled: bool) -> None:
        self.exits.append((agent_id, success, cancelled))


@pytest.fixture()
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture()
def repository(tmp_path: Path):
    repository = WorkflowRepository(tmp_path / "skill_builder.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    """Point the CLI at a temp DB/workspace and the echo agent."""

    workspace = tmp_path / "cli-workspace"
    monkeypatch.setenv("SKILL_BUILDER_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("SKILL_BUILDER_WORKSPACE", str(workspace))
    monkeypatch.setenv("SKILL_BUILDER_WORKER_COMMAND", shlex.join(ECHO_AGENT_COMMAND))
    monkeypatch.setenv("SKILL_BUILDER_AUTO_COMMIT", "0")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-cli-key-123456")
    monkeypatch.delenv("SKILL_BUILDER_ECHO_FAIL_ON", raising=False)
    return workspace


@pytest.fixture()
def echo_command() -> tuple[str, ...]:
    return ECHO_AGENT_COMMAND


@pytest.fixture()
def sleeper_command() -> tuple[str, ...]:
    """Worker that reads its config and then idles until killed."""

    return SLEEPER_COMMAND
