"""Runtime configuration for the orchestrator, workflow, and reconciliation."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

BUNDLED_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
DEFAULT_WORKER_COMMAND = ("node", "agent-runner.js")


@dataclass(slots=True)
class WorkerSettings:
    """How worker processes are started and fed."""

    command: tuple[str, ...] = DEFAULT_WORKER_COMMAND
    keep_stdin_open: bool = True
    max_line_bytes: int = 16 * 1024 * 1024
    permission_mode: str = "bypassPermissions"


@dataclass(slots=True)
class ReconciliationSettings:
    """Startup reconciliation policy."""

    prune_ghosts: bool = True
    auto_commit: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".skill_builder.db")
    workspace_path: Path = field(default_factory=lambda: Path.home() / ".vibedata")
    prompts_source_dir: Path = BUNDLED_PROMPTS_DIR
    sqlite_busy_timeout_ms: int = 5_000
    api_key: str | None = None
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)

    @property
    def skills_root(self) -> Path:
        return self.workspace_path / "skills"

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        workspace_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("SKILL_BUILDER_DB_PATH", ".skill_builder.db")),
            workspace_path=workspace_path
            or Path(
                os.getenv("SKILL_BUILDER_WORKSPACE", str(Path.home() / ".vibedata")),
            ).expanduser(),
            prompts_source_dir=Path(
                os.getenv("SKILL_BUILDER_PROMPTS_DIR", str(BUNDLED_PROMPTS_DIR)),
            ),
            sqlite_busy_timeout_ms=int(
                os.getenv("SKILL_BUILDER_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            worker=WorkerSettings(
                command=_parse_command(os.getenv("SKILL_BUILDER_WORKER_COMMAND")),
                keep_stdin_open=_env_bool("SKILL_BUILDER_KEEP_STDIN_OPEN", default=True),
                max_line_bytes=int(
                    os.getenv("SKILL_BUILDER_MAX_LINE_BYTES", str(16 * 1024 * 1024)),
                ),
                permission_mode=os.getenv("SKILL_BUILDER_PERMISSION_MODE", "bypassPermissions"),
            ),
            reconciliation=ReconciliationSettings(
                prune_ghosts=_env_bool("SKILL_BUILDER_PRUNE_GHOSTS", default=True),
                auto_commit=_env_bool("SKILL_BUILDER_AUTO_COMMIT", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        if not self.worker.command:
            raise ValueError("SKILL_BUILDER_WORKER_COMMAND must not be empty.")
        if self.worker.max_line_bytes < 1024:
            raise ValueError("SKILL_BUILDER_MAX_LINE_BYTES must be >= 1024.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SKILL_BUILDER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.prompts_source_dir.is_dir():
            raise ValueError(
                f"SKILL_BUILDER_PROMPTS_DIR does not exist: {self.prompts_source_dir}",
            )


def _parse_command(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_WORKER_COMMAND
    return tuple(shlex.split(raw))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
