"""
codex-store

Local-first store for narrative codex reference data (characters, locations,
objects, notes). Each story owns one codex aggregate persisted as a single
revisioned document; concurrent writers are arbitrated with optimistic
concurrency and committed snapshots are republished to observers.

Importing this package has no side effects: no config loading, no logging
setup, no store connections.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
