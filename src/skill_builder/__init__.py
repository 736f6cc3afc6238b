"""Skill builder: agent orchestration, workflow state, and startup reconciliation."""

__version__ = "0.3.0"
