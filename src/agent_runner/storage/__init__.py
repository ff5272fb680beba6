"""SQLite storage primitives: engine policy, ORM tables and migrations."""
