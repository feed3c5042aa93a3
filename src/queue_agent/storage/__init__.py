"""SQLite-backed agent state."""
