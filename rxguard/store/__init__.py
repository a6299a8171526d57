"""Reference in-memory collaborators."""
