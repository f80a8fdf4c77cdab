"""SQLite persistence: entities and the gateway."""
