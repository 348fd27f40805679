"""Integration tests: the CLI and runtime wired against real backends."""
