"""SQLite persistence for settings, workflow runs, steps, and sessions."""
