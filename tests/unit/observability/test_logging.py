"""
codex-store — unit tests for observability logging

Purpose
- Validate JSON-lines logging, structlog routing, correlation metadata
  and queue-backed reliability.

What this test file should cover
- JSON line validity and correlation field propagation.
- structlog key/value pairs landing as top-level or nested fields.
- Multi-threaded logging stability.
- Queue drain/shutdown behavior.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from codex_store.domain.models import UTC
from codex_store.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    reset_correlation_fields,
    set_correlation_fields,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"codex_store.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(session_id="session-corr", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(story_id="s1", operation="add_entry"):
        logger.info("codex write", extra={"attempt": 2, "when": datetime(2026, 1, 1, tzinfo=UTC)})
    logger.info("outside scope")

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "session-corr" / "codex_store.jsonl"
    first, second = _read_json_lines(handle.log_path)
    assert first["session_id"] == "session-corr"
    assert first["story_id"] == "s1"
    assert first["operation"] == "add_entry"
    assert first["event"] == "codex write"
    assert first["fields"] == {"attempt": 2, "when": "2026-01-01T00:00:00.000000Z"}
    assert str(first["timestamp"]).endswith("Z")
    assert "story_id" not in second
    assert get_correlation_context() == {}


def test_structlog_events_route_through_the_session_file(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="session-structlog", base_log_dir=tmp_path, logger_name=logger_name
        )
    )
    log = structlog.get_logger(logger_name)

    log.info("codex_write_committed", story_id="s2", operation="add_category", attempts=1)
    log.debug("below threshold")

    shutdown_logging(handle)

    [record] = _read_json_lines(handle.log_path)
    assert record["event"] == "codex_write_committed"
    assert record["story_id"] == "s2"
    assert record["operation"] == "add_category"
    assert record["level"] == "INFO"
    assert record["fields"] == {"attempts": 1}


def test_correlation_tokens_nest_and_reset() -> None:
    outer = set_correlation_fields(story_id="s1")
    inner = set_correlation_fields(operation="reorder", story_id=None)

    assert get_correlation_context() == {"operation": "reorder"}
    reset_correlation_fields(inner)
    assert get_correlation_context() == {"story_id": "s1"}
    reset_correlation_fields(outer)
    with pytest.raises(ValueError, match="correlation value must not be empty"):
        set_correlation_fields(story_id="  ")


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="session-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        with correlation_scope(story_id=f"s{thread_idx}"):
            for i in range(per_thread):
                logger.info("thread=%s index=%s", thread_idx, i)

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    parsed = _read_json_lines(handle.log_path)
    assert len(parsed) == total_threads * per_thread
    for record in parsed:
        thread_idx = str(record["event"]).split()[0].removeprefix("thread=")
        assert record["story_id"] == f"s{thread_idx}"


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            session_id="session-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected
    assert handle.is_shutdown
    assert get_active_logging_handle() is None


def test_new_session_replaces_active_handle(tmp_path: Path) -> None:
    first = setup_structured_logging(
        LoggingConfig(session_id="one", base_log_dir=tmp_path, logger_name=_logger_name())
    )
    second = setup_structured_logging(
        LoggingConfig(session_id="two", base_log_dir=tmp_path, logger_name=_logger_name())
    )

    assert first.is_shutdown
    assert get_active_logging_handle() is second


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"session_id": " "}, "session_id must not be empty"),
        ({"log_filename": "nested/codex.jsonl"}, "path separators"),
        ({"queue_size": 0}, "queue_size must be > 0"),
        ({"level": "chatty"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    fields: dict[str, object] = {"session_id": "bad", "base_log_dir": tmp_path}
    fields.update(overrides)

    with pytest.raises(ValueError, match=message):
        setup_structured_logging(LoggingConfig(**fields))  # type: ignore[arg-type]


def test_config_from_observability_section() -> None:
    config = LoggingConfig.from_observability(
        {"log_level": "DEBUG", "log_dir": "var/logs", "log_to_console": True},
        session_id="abc",
    )
    fallback = LoggingConfig.from_observability({"log_dir": 7}, session_id="abc")

    assert config.level == "DEBUG"
    assert Path(config.base_log_dir) == Path("var/logs")
    assert config.log_to_console is True
    assert fallback.base_log_dir == "logs"
    assert fallback.level == "INFO"
