"""Stable constants shared across the codex store layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Document keys and discriminator.
CODEX_KEY_PREFIX: Final[str] = "codex_"
CODEX_KEY_RANGE_END: Final[str] = CODEX_KEY_PREFIX + "\uffff"
CODEX_DOCUMENT_TYPE: Final[str] = "codex"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
DOCUMENT_STORE_SCHEMA_VERSION: Final[int] = 1

# Optimistic concurrency defaults (overridable through ``[retry]``).
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BASE_DELAY_MS: Final[int] = 50
DEFAULT_MAX_DELAY_MS: Final[int] = 1_000

# Store readiness wait (overridable through ``[store]``).
DEFAULT_READY_TIMEOUT_SECONDS: Final[float] = 5.0
DEFAULT_READY_POLL_INTERVAL_SECONDS: Final[float] = 0.05

# Soft-validation defaults.
DEFAULT_ENTRY_TITLE: Final[str] = "New Entry"
DEFAULT_CATEGORY_TITLE: Final[str] = "New Category"
CODEX_TITLE_TEMPLATE: Final[str] = "Codex for Story {story_id}"

# Seed categories for a freshly created codex: (title, description, icon).
DEFAULT_CATEGORIES: Final[tuple[tuple[str, str, str], ...]] = (
    ("Characters", "People and creatures of the story", "\U0001f464"),
    ("Locations", "Places, regions, and buildings", "\U0001f3f0"),
    ("Objects", "Items, artifacts, and important things", "\u2694\ufe0f"),
    ("Notes", "General notes and ideas", "\U0001f4dd"),
)

# Default runtime paths (relative to the config file unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath("state")
DEFAULT_STORE_PATH: Final[PurePosixPath] = STATE_DIR / "codex.sqlite"
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

MISSING_TARGET_POLICIES: Final[tuple[str, ...]] = ("ignore", "raise")

__all__ = [
    "CODEX_DOCUMENT_TYPE",
    "CODEX_KEY_PREFIX",
    "CODEX_KEY_RANGE_END",
    "CODEX_TITLE_TEMPLATE",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BASE_DELAY_MS",
    "DEFAULT_CATEGORIES",
    "DEFAULT_CATEGORY_TITLE",
    "DEFAULT_ENTRY_TITLE",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_DELAY_MS",
    "DEFAULT_READY_POLL_INTERVAL_SECONDS",
    "DEFAULT_READY_TIMEOUT_SECONDS",
    "DEFAULT_STORE_PATH",
    "DOCUMENT_STORE_SCHEMA_VERSION",
    "LOG_DIR",
    "MISSING_TARGET_POLICIES",
    "STATE_DIR",
]
