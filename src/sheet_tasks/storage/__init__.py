"""SQLite persistence for tasks and per-row records."""
