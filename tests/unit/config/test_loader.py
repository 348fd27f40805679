"""
codex-store — unit tests for config loader

Purpose
- Validate deterministic config loading from defaults, TOML, profiles, env and CLI overrides.

What this test file should cover
- Precedence: CLI > env > profile > file > defaults.
- Deterministic env var path mapping and type coercion.
- Path normalization relative to the config file.
- Deterministic effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from codex_store.config import ConfigValidationError
from codex_store.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
)

REPO_ROOT = Path(__file__).resolve().parents[3]


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "codex_store.toml"
    _write_config(
        config_path,
        """
[retry]
max_attempts = 4
base_delay_ms = 20

[codex]
default_entry_title = "Untitled"
""".strip(),
    )

    from_file = load_config(config_path, environ={})
    from_env = load_config(
        config_path,
        environ={"CODEX_RETRY_MAX_ATTEMPTS": "6", "CODEX_RETRY_BASE_DELAY_MS": "30"},
    )
    from_cli = load_config(
        config_path,
        environ={"CODEX_RETRY_MAX_ATTEMPTS": "6"},
        cli_overrides={"retry.max_attempts": 9},
    )

    assert from_file["retry"]["max_attempts"] == 4
    assert from_file["retry"]["max_delay_ms"] == 1_000
    assert from_file["codex"]["default_entry_title"] == "Untitled"
    assert from_file["codex"]["default_category_title"] == "New Category"
    assert from_env["retry"]["max_attempts"] == 6
    assert from_env["retry"]["base_delay_ms"] == 30
    assert from_cli["retry"]["max_attempts"] == 9


def test_env_override_type_coercion(tmp_path: Path) -> None:
    config_path = tmp_path / "codex_store.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "CODEX_OBSERVABILITY_LOG_TO_CONSOLE": "yes",
            "CODEX_STORE_READY_TIMEOUT_SECONDS": "2.5",
            "CODEX_STORE_BACKEND": " memory ",
            "CODEX_META_SCHEMA_VERSION": "99",
        },
    )

    assert loaded["observability"]["log_to_console"] is True
    assert loaded["store"]["ready_timeout_seconds"] == 2.5
    assert loaded["store"]["backend"] == "memory"
    assert loaded["meta"]["schema_version"] == 1

    with pytest.raises(ConfigLoadError, match="CODEX_RETRY_MAX_ATTEMPTS must be an integer"):
        load_config(config_path, environ={"CODEX_RETRY_MAX_ATTEMPTS": "many"})
    with pytest.raises(ConfigLoadError, match="must be a boolean"):
        load_config(config_path, environ={"CODEX_OBSERVABILITY_METRICS_ENABLED": "maybe"})
    with pytest.raises(ConfigLoadError, match="must be a number"):
        load_config(config_path, environ={"CODEX_STORE_READY_TIMEOUT_SECONDS": "soon"})


def test_profile_selection_from_argument_env_and_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "codex_store.toml"
    _write_config(
        config_path,
        """
[profiles.nightly.retry]
max_attempts = 12
""".strip(),
    )

    strict = load_config(config_path, profile="strict", environ={})
    bulk = load_config(config_path, environ={"CODEX_PROFILE": "bulk_import"})
    nightly = load_config(config_path, cli_overrides={"profile": "nightly"}, environ={})
    overridden = load_config(
        config_path, profile="strict", environ={"CODEX_CODEX_MISSING_TARGET_POLICY": "ignore"}
    )

    assert strict["codex"]["missing_target_policy"] == "raise"
    assert bulk["retry"] == {"max_attempts": 8, "base_delay_ms": 10, "max_delay_ms": 250}
    assert nightly["retry"]["max_attempts"] == 12
    assert overridden["codex"]["missing_target_policy"] == "ignore"

    with pytest.raises(ConfigValidationError, match="profile 'ghost' is not defined"):
        load_config(config_path, profile="ghost", environ={})


def test_paths_are_normalized_relative_to_config_file(tmp_path: Path) -> None:
    config_path = tmp_path / "conf" / "codex_store.toml"
    _write_config(
        config_path,
        """
[store]
path = "../data/codex.sqlite"

[observability]
log_dir = "/var/log/codex"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded["store"]["path"] == (tmp_path.resolve() / "data" / "codex.sqlite").as_posix()
    assert loaded["observability"]["log_dir"] == "/var/log/codex"


def test_missing_explicit_file_and_invalid_toml_fail(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[retry\nmax_attempts = 1")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_implicit_config_falls_back_to_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    loaded = load_config(environ={})

    assert loaded["store"]["backend"] == "sqlite"
    assert loaded["store"]["path"] == (tmp_path.resolve() / "state" / "codex.sqlite").as_posix()


def test_invalid_values_report_every_issue(tmp_path: Path) -> None:
    config_path = tmp_path / "codex_store.toml"
    _write_config(
        config_path,
        """
[retry]
max_attempts = 0
base_delay_ms = 500
max_delay_ms = 100

[store]
backend = "postgres"
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    paths = {issue.path for issue in excinfo.value.issues}
    assert {"retry.max_attempts", "store.backend", "retry.base_delay_ms"} <= paths


def test_repo_sample_config_loads_and_dumps_deterministically() -> None:
    sample = REPO_ROOT / "codex_store.toml"

    first = load_config(sample, environ={})
    second = load_config(sample, environ={})
    dumped = dump_effective_config(first)

    assert dumped == dump_effective_config(second)
    assert json.loads(dumped) == first
    assert first["store"]["path"].endswith("state/codex.sqlite")
    assert set(first["profiles"]) == {"interactive", "bulk_import", "strict"}
