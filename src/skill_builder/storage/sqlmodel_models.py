"""SQLModel ORM tables for the workflow store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel

APP_SETTINGS_KEY = "app_settings"


class SettingRow(SQLModel, table=True):
    __tablename__ = "settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))


class WorkflowRun(SQLModel, table=True):
    __tablename__ = "workflow_runs"  # type: ignore[bad-override]

    skill_name: str = Field(primary_key=True)
    domain: str = Field(default="")
    current_step: int = Field(default=0)
    status: str = Field(index=True)
    skill_source: str = Field(default="builder")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowStep(SQLModel, table=True):
    __tablename__ = "workflow_steps"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("skill_name", "step_id", "variant"),)

    skill_name: str = Field(index=True)
    step_id: int
    variant: str = Field(default="")
    status: str
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowSession(SQLModel, table=True):
    __tablename__ = "workflow_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    skill_name: str = Field(index=True)
    pid: int
    is_open: bool = Field(default=True, index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    closed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
