"""Domain values for the codex aggregate and its change notifications."""

from codex_store.domain.events import ChangeKind, CodexSnapshot
from codex_store.domain.models import (
    Codex,
    CodexCategory,
    CodexEntry,
    CodexEntryGroup,
    CustomField,
    StoryRole,
)

__all__ = [
    "ChangeKind",
    "Codex",
    "CodexCategory",
    "CodexEntry",
    "CodexEntryGroup",
    "CodexSnapshot",
    "CustomField",
    "StoryRole",
]
