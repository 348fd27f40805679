"""Assemble the effective runtime config from its layers.

Layers, lowest first: built-in defaults, ``codex_store.toml``, the selected
profile overlay, ``CODEX_<SECTION>_<KEY>`` environment variables, and dotted
CLI overrides such as ``retry.max_attempts``. Every section of the config is a
flat table, so each environment variable maps to exactly one field and is
parsed according to that field's current type.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from codex_store.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "codex_store.toml"
ENV_PREFIX: Final[str] = "CODEX_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

# Sections that are not runtime settings and never take env overrides.
_NON_ENV_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})
_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when the config file or an override cannot be read."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config with path fields made absolute.

    Without ``config_path`` the file is looked up in the working directory and
    may be absent; an explicit path must exist.
    """

    path = _config_file(config_path)
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    selected = _select_profile(profile, overrides.pop("profile", None), env.get(PROFILE_ENV_VAR))

    file_layer = _read_config_file(path, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, env_overrides(config, env))
    config = merge_config(config, _dotted_overrides(overrides))
    return normalize_paths(assert_valid_config(config), base_dir=path.parent)


def env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``CODEX_<SECTION>_<KEY>`` values for the fields present in ``config``."""

    overrides: dict[str, Any] = {}
    for section in sorted(config):
        fields = config[section]
        if section in _NON_ENV_SECTIONS or not isinstance(fields, Mapping):
            continue
        for key in sorted(fields):
            name = f"{ENV_PREFIX}{section}_{key}".upper()
            raw = environ.get(name)
            if raw is not None:
                overrides.setdefault(section, {})[key] = _parse_env_value(name, raw, fields[key])
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve store and log paths, including those set by profiles, against ``base_dir``."""

    normalized = merge_config({}, config)
    tables: list[dict[str, Any]] = [normalized]
    profiles = normalized.get("profiles")
    if isinstance(profiles, dict):
        tables.extend(
            overlay for _, overlay in sorted(profiles.items()) if isinstance(overlay, dict)
        )

    for table in tables:
        for section, key in PATH_FIELDS:
            fields = table.get(section)
            if isinstance(fields, dict) and isinstance(fields.get(key), str):
                fields[key] = _absolute_posix(fields[key], base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact JSON with sorted keys, identical for identical configs."""

    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(argument: str | None, cli_value: object, env_value: str | None) -> str | None:
    """First of the explicit argument, the CLI override, and ``CODEX_PROFILE``."""

    for source, value in (("profile argument", argument), ("cli override 'profile'", cli_value)):
        if value is None:
            continue
        if not isinstance(value, str):
            raise ConfigLoadError(f"{source} must be a string")
        return value.strip() or None
    if env_value is None:
        return None
    return env_value.strip() or None


def _parse_env_value(name: str, raw: str, current: object) -> object:
    text = raw.strip()
    if isinstance(current, bool):
        lowered = text.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ConfigLoadError(f"{name} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(current, int):
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} must be an integer") from exc
    if isinstance(current, float):
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} must be a number") from exc
    return text


def _dotted_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Turn ``{"retry.max_attempts": 9}`` into ``{"retry": {"max_attempts": 9}}``."""

    nested: dict[str, Any] = {}
    for dotted in sorted(overrides):
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        table = nested
        for part in parts[:-1]:
            child = table.get(part)
            if not isinstance(child, dict):
                child = table[part] = {}
            table = child
        table[parts[-1]] = overrides[dotted]
    return nested


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "ConfigLoadError",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
