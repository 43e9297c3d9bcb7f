"""Forward-only SQL migrations."""
