"""Identifier generation for codex aggregates.

Identifiers are ``<prefix>-<ulid>`` strings: sortable by creation time, unique
without coordination, and readable in logs. Imported documents may carry ids
from other sources, so models accept any non-empty string; the validators here
only apply to ids minted by this package.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

CODEX_ID_PREFIX: Final[str] = "cdx"
CATEGORY_ID_PREFIX: Final[str] = "cat"
ENTRY_ID_PREFIX: Final[str] = "ent"
CUSTOM_FIELD_ID_PREFIX: Final[str] = "fld"
SESSION_ID_PREFIX: Final[str] = "ses"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

RandBytes = Callable[[int], bytes]

__all__ = [
    "CATEGORY_ID_PREFIX",
    "CODEX_ID_PREFIX",
    "CROCKFORD_BASE32_ALPHABET",
    "CUSTOM_FIELD_ID_PREFIX",
    "ENTRY_ID_PREFIX",
    "SESSION_ID_PREFIX",
    "ULID_LENGTH",
    "RandBytes",
    "generate_category_id",
    "generate_codex_id",
    "generate_custom_field_id",
    "generate_entry_id",
    "generate_prefixed_id",
    "generate_session_id",
    "generate_ulid",
    "validate_prefixed_id",
    "validate_ulid",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = _resolve_timestamp_ms(timestamp_ms)
    random_part = _resolve_random_bytes(randbytes)
    value = (ts_ms << 80) | int.from_bytes(random_part, "big")
    return _encode_crockford_base32(value, ULID_LENGTH)


def validate_ulid(s: str) -> None:
    """Validate a ULID and raise ``ValueError`` naming the offending character."""
    if not isinstance(s, str):
        raise ValueError(f"ulid must be a string, got {type(s).__name__}")
    if len(s) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(s)}")
    if s[0] not in "01234567":
        raise ValueError("ulid overflow: leading character must be 0-7")
    for index, char in enumerate(s):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: RandBytes | None = None,
) -> str:
    """Generate an id in the form ``<prefix>-<ulid>``."""
    _validate_prefix(prefix)
    ulid = generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)
    return f"{prefix}{_PREFIX_SEPARATOR}{ulid}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    _validate_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}' in {id_str!r}")
    try:
        validate_ulid(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_codex_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(CODEX_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_category_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(CATEGORY_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_entry_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(ENTRY_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def generate_custom_field_id(
    *, timestamp_ms: int | None = None, randbytes: RandBytes | None = None
) -> str:
    return generate_prefixed_id(
        CUSTOM_FIELD_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes
    )


def generate_session_id() -> str:
    return generate_prefixed_id(SESSION_ID_PREFIX)


def _resolve_timestamp_ms(timestamp_ms: int | None) -> int:
    resolved = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(resolved, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(resolved).__name__}")
    if not 0 <= resolved <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {resolved}"
        )
    return resolved


def _resolve_random_bytes(randbytes: RandBytes | None) -> bytes:
    provider = secrets.token_bytes if randbytes is None else randbytes
    raw = bytes(provider(ULID_RANDOM_BYTES))
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    return raw


def _encode_crockford_base32(value: int, length: int) -> str:
    chars = ["0"] * length
    working = value
    for index in range(length - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[working & 0b11111]
        working >>= 5
    if working != 0:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(chars)


def _validate_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_PREFIX_SEPARATOR}'")
