"""SQLite storage primitives shared by orchestrator repositories."""
