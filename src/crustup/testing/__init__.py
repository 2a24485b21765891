"""In-memory collaborators for tests and local dry runs."""
