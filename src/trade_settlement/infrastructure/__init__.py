"""Infrastructure adapters: database and migrations."""
