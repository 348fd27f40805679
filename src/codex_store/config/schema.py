"""Configuration defaults, schema validation, and profile overlays.

Validation never stops at the first problem: every issue is collected with its
dotted field path so ``codex_store.toml`` can be fixed in one pass.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from codex_store.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_CATEGORY_TITLE,
    DEFAULT_ENTRY_TITLE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_READY_POLL_INTERVAL_SECONDS,
    DEFAULT_READY_TIMEOUT_SECONDS,
    DEFAULT_STORE_PATH,
    LOG_DIR,
    MISSING_TARGET_POLICIES,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("interactive", "bulk_import", "strict")
STORE_BACKENDS: Final[tuple[str, ...]] = ("memory", "sqlite")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("store", "path"),
    ("observability", "log_dir"),
)

_OVERLAY_SECTIONS: Final[tuple[str, ...]] = ("store", "retry", "codex", "observability")


class MetaConfig(TypedDict):
    schema_version: int


class StoreConfig(TypedDict):
    backend: Literal["memory", "sqlite"]
    path: str
    ready_timeout_seconds: float
    ready_poll_interval_seconds: float
    busy_timeout_ms: int
    busy_retry_limit: int
    busy_retry_backoff_ms: int


class RetryConfig(TypedDict):
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int


class CodexConfig(TypedDict):
    missing_target_policy: Literal["ignore", "raise"]
    default_entry_title: str
    default_category_title: str
    history_size: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_console: bool
    metrics_enabled: bool


class ProfileOverlay(TypedDict, total=False):
    store: dict[str, object]
    retry: dict[str, object]
    codex: dict[str, object]
    observability: dict[str, object]


class CodexStoreConfig(TypedDict):
    meta: MetaConfig
    store: StoreConfig
    retry: RetryConfig
    codex: CodexConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[CodexStoreConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "store": {
        "backend": "sqlite",
        "path": str(DEFAULT_STORE_PATH),
        "ready_timeout_seconds": DEFAULT_READY_TIMEOUT_SECONDS,
        "ready_poll_interval_seconds": DEFAULT_READY_POLL_INTERVAL_SECONDS,
        "busy_timeout_ms": 5_000,
        "busy_retry_limit": 4,
        "busy_retry_backoff_ms": 25,
    },
    "retry": {
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "base_delay_ms": DEFAULT_BASE_DELAY_MS,
        "max_delay_ms": DEFAULT_MAX_DELAY_MS,
    },
    "codex": {
        "missing_target_policy": "ignore",
        "default_entry_title": DEFAULT_ENTRY_TITLE,
        "default_category_title": DEFAULT_CATEGORY_TITLE,
        "history_size": 64,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "log_to_console": False,
        "metrics_enabled": True,
    },
    "profiles": {
        "interactive": {},
        "bulk_import": {
            "retry": {"max_attempts": 8, "base_delay_ms": 10, "max_delay_ms": 250},
            "codex": {"missing_target_policy": "ignore"},
        },
        "strict": {
            "codex": {"missing_target_policy": "raise"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def default_config() -> CodexStoreConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade codex_store.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade codex-store"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = profile.strip() if isinstance(profile, str) else ""
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile and not issues.has_issues:
        profiles = normalized.get("profiles", {})
        if selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")
        else:
            _validate_root(merge_config(normalized, profiles[selected_profile]), issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "store": _validate_store,
        "retry": _validate_retry,
        "codex": _validate_codex,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, {*validators, "profiles"}, "", issues)
    _require_keys(payload, set(validators), "", issues)

    out: dict[str, Any] = {}
    for key, validator in validators.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is not None:
            out[key] = validator(section, key, issues, False)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)
    else:
        out["profiles"] = {}

    retry = out.get("retry", {})
    base_delay = retry.get("base_delay_ms")
    max_delay = retry.get("max_delay_ms")
    if isinstance(base_delay, int) and isinstance(max_delay, int) and base_delay > max_delay:
        issues.add("retry.base_delay_ms", "must be <= retry.max_delay_ms")

    store = out.get("store", {})
    timeout = store.get("ready_timeout_seconds")
    interval = store.get("ready_poll_interval_seconds")
    if isinstance(timeout, float) and isinstance(interval, float) and interval > timeout:
        issues.add("store.ready_poll_interval_seconds", "must be <= store.ready_timeout_seconds")
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_store(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "backend",
        "path",
        "ready_timeout_seconds",
        "ready_poll_interval_seconds",
        "busy_timeout_ms",
        "busy_retry_limit",
        "busy_retry_backoff_ms",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(out, "backend", payload, path, issues, _enum(STORE_BACKENDS))
    _put(out, "path", payload, path, issues, _as_path_text)
    for key in ("ready_timeout_seconds", "ready_poll_interval_seconds"):
        _put(out, key, payload, path, issues, _positive_float)
    _put(out, "busy_timeout_ms", payload, path, issues, _int_at_least(0))
    _put(out, "busy_retry_limit", payload, path, issues, _int_at_least(0))
    _put(out, "busy_retry_backoff_ms", payload, path, issues, _int_at_least(0))
    return out


def _validate_retry(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"max_attempts", "base_delay_ms", "max_delay_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(out, "max_attempts", payload, path, issues, _int_at_least(1))
    _put(out, "base_delay_ms", payload, path, issues, _int_at_least(0))
    _put(out, "max_delay_ms", payload, path, issues, _int_at_least(0))
    return out


def _validate_codex(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {
        "missing_target_policy",
        "default_entry_title",
        "default_category_title",
        "history_size",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    _put(out, "missing_target_policy", payload, path, issues, _enum(MISSING_TARGET_POLICIES))
    _put(out, "default_entry_title", payload, path, issues, _as_str)
    _put(out, "default_category_title", payload, path, issues, _as_str)
    _put(out, "history_size", payload, path, issues, _int_at_least(1))
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_console", "metrics_enabled"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload and isinstance(payload["log_level"], str):
        payload = {**payload, "log_level": payload["log_level"].strip().upper()}
    _put(out, "log_level", payload, path, issues, _enum(LOG_LEVELS))
    _put(out, "log_dir", payload, path, issues, _as_path_text)
    _put(out, "log_to_console", payload, path, issues, _as_bool)
    _put(out, "metrics_enabled", payload, path, issues, _as_bool)
    return out


_OVERLAY_VALIDATORS: Final[dict[str, _SectionValidator]] = {
    "store": _validate_store,
    "retry": _validate_retry,
    "codex": _validate_codex,
    "observability": _validate_observability,
}


def _validate_profiles(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(_OVERLAY_SECTIONS), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in _OVERLAY_SECTIONS:
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                overlay[section] = _OVERLAY_VALIDATORS[section](
                    section_obj, section_path, issues, True
                )
        out[profile_name] = overlay
    return out


# ---------------------------------------------------------------------------
# Field coercion helpers
# ---------------------------------------------------------------------------

_FieldParser = Callable[[object, str, _IssueCollector], Any]


def _put(
    out: dict[str, Any],
    key: str,
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    parser: _FieldParser,
) -> None:
    if key not in payload:
        return
    parsed = parser(payload[key], _join(path, key), issues)
    if parsed is not None:
        out[key] = parsed


def _enum(allowed_values: tuple[str, ...]) -> _FieldParser:
    def parse(value: object, path: str, issues: _IssueCollector) -> str | None:
        return _as_enum(value, path, issues, allowed_values=allowed_values)

    return parse


def _int_at_least(minimum: int) -> _FieldParser:
    def parse(value: object, path: str, issues: _IssueCollector) -> int | None:
        return _as_int(value, path, issues, minimum=minimum)

    return parse


def _positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues, minimum=0.0)
    if parsed is not None and parsed == 0.0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "STORE_BACKENDS",
    "CodexConfig",
    "CodexStoreConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ObservabilityConfig",
    "RetryConfig",
    "StoreConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
