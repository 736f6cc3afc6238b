"""Alembic migration scripts for the workflow store."""
