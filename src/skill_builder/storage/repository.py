"""Workflow store facade backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from skill_builder.errors import PersistenceError
from skill_builder.models import (
    AppSettings,
    SkillSource,
    WorkflowRunView,
    WorkflowSessionView,
    WorkflowStatus,
    WorkflowStepView,
)
from skill_builder.storage.alembic_runner import upgrade_head
from skill_builder.storage.common import build_sqlite_engine, to_utc_aware_datetime, utc_now
from skill_builder.storage.sqlmodel_models import (
    APP_SETTINGS_KEY,
    SettingRow,
    WorkflowRun,
    WorkflowSession,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


class WorkflowRepository:
    """Persistence facade for settings, runs, step statuses, and sessions.

    Every read and write goes through one re-entrant lock so callers on
    different threads (CLI, reconciliation, event loop executors) never
    interleave partial updates.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._lock = threading.RLock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        with self._lock:
            try:
                upgrade_head(self.db_path)
            except SQLAlchemyError as error:
                raise PersistenceError(f"Failed to migrate workflow store: {error}") from error

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock, Session(self.engine) as session:
            try:
                yield session
            except SQLAlchemyError as error:
                session.rollback()
                logger.error("Workflow store operation failed: %s", error)
                raise PersistenceError(f"Workflow store operation failed: {error}") from error

    # -- settings -----------------------------------------------------------

    def read_app_settings(self) -> AppSettings:
        with self._session() as session:
            row = session.get(SettingRow, APP_SETTINGS_KEY)
            if row is None:
                return AppSettings()
            try:
                return AppSettings.from_json(row.value)
            except ValueError as error:
                raise PersistenceError(f"Stored app settings are corrupt: {error}") from error

    def write_app_settings(self, settings: AppSettings) -> None:
        with self._session() as session:
            row = session.get(SettingRow, APP_SETTINGS_KEY)
            if row is None:
                row = SettingRow(key=APP_SETTINGS_KEY, value=settings.to_json())
            else:
                row.value = settings.to_json()
            session.add(row)
            session.commit()

    # -- runs ---------------------------------------------------------------

    def get_workflow_run(self, skill_name: str) -> WorkflowRunView | None:
        with self._session() as session:
            row = session.get(WorkflowRun, skill_name)
            return _to_run_view(row) if row is not None else None

    def list_workflow_runs(self) -> list[WorkflowRunView]:
        with self._session() as session:
            rows = session.exec(select(WorkflowRun).order_by(col(WorkflowRun.skill_name))).all()
            return [_to_run_view(row) for row in rows]

    def save_workflow_run(
        self,
        skill_name: str,
        *,
        current_step: int,
        status: WorkflowStatus,
        domain: str | None = None,
        skill_source: SkillSource | None = None,
    ) -> WorkflowRunView:
        """Create or update a run; ``None`` keeps the stored domain/source."""

        now = utc_now()
        with self._session() as session:
            row = session.get(WorkflowRun, skill_name)
            if row is None:
                row = WorkflowRun(
                    skill_name=skill_name,
                    domain=domain or "",
                    current_step=current_step,
                    status=status.value,
                    skill_source=(skill_source or SkillSource.BUILDER).value,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.current_step = current_step
                row.status = status.value
                row.updated_at = now
                if domain is not None:
                    row.domain = domain
                if skill_source is not None:
                    row.skill_source = skill_source.value
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def delete_workflow_run(self, skill_name: str) -> bool:
        """Delete a run and its step rows; sessions are left to reconciliation."""

        with self._session() as session:
            row = session.get(WorkflowRun, skill_name)
            steps = session.exec(
                select(WorkflowStep).where(WorkflowStep.skill_name == skill_name),
            ).all()
            for step in steps:
                session.delete(step)
            if row is not None:
                session.delete(row)
            session.commit()
            return row is not None

    # -- steps --------------------------------------------------------------

    def get_workflow_steps(self, skill_name: str) -> list[WorkflowStepView]:
        with self._session() as session:
            rows = session.exec(
                select(WorkflowStep)
                .where(WorkflowStep.skill_name == skill_name)
                .order_by(col(WorkflowStep.step_id), col(WorkflowStep.variant)),
            ).all()
            return [_to_step_view(row) for row in rows]

    def save_workflow_step(
        self,
        skill_name: str,
        step_id: int,
        status: WorkflowStatus,
        *,
        variant: str = "",
    ) -> WorkflowStepView:
        with self._session() as session:
            row = session.get(WorkflowStep, (skill_name, step_id, variant))
            if row is None:
                row = WorkflowStep(
                    skill_name=skill_name,
                    step_id=step_id,
                    variant=variant,
                    status=status.value,
                    updated_at=utc_now(),
                )
            else:
                row.status = status.value
                row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_step_view(row)

    def reset_workflow_from(self, skill_name: str, from_step_id: int) -> bool:
        """Reset step rows ``>= from_step_id`` and rewind the run in one transaction.

        Returns ``False`` when no run exists; step rows are still reset.
        """

        now = utc_now()
        with self._session() as session:
            steps = session.exec(
                select(WorkflowStep).where(
                    WorkflowStep.skill_name == skill_name,
                    WorkflowStep.step_id >= from_step_id,
                ),
            ).all()
            for step in steps:
                step.status = WorkflowStatus.PENDING.value
                step.updated_at = now
                session.add(step)

            run = session.get(WorkflowRun, skill_name)
            if run is not None:
                run.current_step = from_step_id
                run.status = WorkflowStatus.PENDING.value
                run.updated_at = now
                session.add(run)
            session.commit()
            return run is not None

    # -- sessions -----------------------------------------------------------

    def create_session(
        self,
        skill_name: str,
        pid: int,
        *,
        session_id: str | None = None,
    ) -> WorkflowSessionView:
        with self._session() as session:
            row = WorkflowSession(
                session_id=session_id or str(uuid4()),
                skill_name=skill_name,
                pid=pid,
                is_open=True,
                started_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session_view(row)

    def close_session(self, session_id: str) -> bool:
        """Mark a session closed; returns ``False`` if it was not open."""

        with self._session() as session:
            row = session.get(WorkflowSession, session_id)
            if row is None or not row.is_open:
                return False
            row.is_open = False
            row.closed_at = utc_now()
            session.add(row)
            session.commit()
            return True

    def list_open_sessions(self, skill_name: str | None = None) -> list[WorkflowSessionView]:
        with self._session() as session:
            statement = select(WorkflowSession).where(col(WorkflowSession.is_open).is_(True))
            if skill_name is not None:
                statement = statement.where(WorkflowSession.skill_name == skill_name)
            rows = session.exec(statement.order_by(col(WorkflowSession.started_at))).all()
            return [_to_session_view(row) for row in rows]


def _to_run_view(row: WorkflowRun) -> WorkflowRunView:
    return WorkflowRunView(
        skill_name=row.skill_name,
        domain=row.domain,
        current_step=row.current_step,
        status=WorkflowStatus(row.status),
        skill_source=SkillSource(row.skill_source),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_step_view(row: WorkflowStep) -> WorkflowStepView:
    return WorkflowStepView(
        skill_name=row.skill_name,
        step_id=row.step_id,
        variant=row.variant,
        status=WorkflowStatus(row.status),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_session_view(row: WorkflowSession) -> WorkflowSessionView:
    return WorkflowSessionView(
        session_id=row.session_id,
        skill_name=row.skill_name,
        pid=row.pid,
        is_open=row.is_open,
        started_at=to_utc_aware_datetime(row.started_at),
        closed_at=to_utc_aware_datetime(row.closed_at) if row.closed_at else None,
    )
