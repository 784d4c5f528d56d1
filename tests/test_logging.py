"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from pathlib import Path

import pytest

from tdcore.ids import parse_timestamp
from tdcore.logging import setup_logging


@pytest.fixture(autouse=True)
def _reset_tdcore_logger() -> None:
    logger = logging.getLogger("tdcore")
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()


def _last_record(path: Path) -> dict[str, object]:
    return json.loads(path.read_text().strip().split("\n")[-1])


class TestSetupLogging:
    def test_creates_log_file(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("test_message", extra={"op": "create_issue", "entity": "td-1"})
        for handler in logger.handlers:
            handler.flush()
        record = _last_record(tmp_path / "tdcore.log")
        assert record["msg"] == "test_message"
        assert record["level"] == "INFO"
        assert record["logger"] == "tdcore"
        assert record["op"] == "create_issue"
        assert record["entity"] == "td-1"

    def test_child_loggers_propagate(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logging.getLogger("tdcore.db_boards").info("from child", extra={"duration_ms": 4.5})
        for handler in logger.handlers:
            handler.flush()
        record = _last_record(tmp_path / "tdcore.log")
        assert record["logger"] == "tdcore.db_boards"
        assert record["duration_ms"] == 4.5

    def test_exception_recorded(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("failed")
        for handler in logger.handlers:
            handler.flush()
        assert _last_record(tmp_path / "tdcore.log")["exception"] == "boom"

    def test_idempotent_setup(self, tmp_path: Path) -> None:
        logger1 = setup_logging(tmp_path)
        logger2 = setup_logging(tmp_path)
        assert logger1 is logger2
        assert len(logger1.handlers) == 1

    def test_new_directory_replaces_handler(self, tmp_path: Path) -> None:
        first = tmp_path / "a"
        second = tmp_path / "b"
        first.mkdir()
        second.mkdir()
        setup_logging(first)
        logger = setup_logging(second)
        assert len(logger.handlers) == 1
        handler = logger.handlers[0]
        assert isinstance(handler, logging.handlers.RotatingFileHandler)
        assert Path(handler.baseFilename).parent == second

    def test_no_duplicate_handlers_under_concurrency(self, tmp_path: Path) -> None:
        barrier = threading.Barrier(8)

        def setup() -> None:
            barrier.wait()
            setup_logging(tmp_path)

        threads = [threading.Thread(target=setup) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(logging.getLogger("tdcore").handlers) == 1


class TestRecordFields:
    def test_canonical_timestamp(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("ts check")
        for handler in logger.handlers:
            handler.flush()
        ts = str(_last_record(tmp_path / "tdcore.log")["ts"])
        assert ts.endswith("Z")
        assert len(ts) == len("2026-01-01T00:00:00.000000Z")
        parse_timestamp(ts)

    def test_session_stamped_on_child_records(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path, session="ses-1")
        logging.getLogger("tdcore.db_issues").info("stamped")
        for handler in logger.handlers:
            handler.flush()
        assert _last_record(tmp_path / "tdcore.log")["session"] == "ses-1"

    def test_explicit_session_extra_wins(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path, session="ses-1")
        logger.info("explicit", extra={"session": "ses-2"})
        for handler in logger.handlers:
            handler.flush()
        assert _last_record(tmp_path / "tdcore.log")["session"] == "ses-2"

    def test_repeat_setup_updates_session(self, tmp_path: Path) -> None:
        setup_logging(tmp_path, session="ses-1")
        logger = setup_logging(tmp_path, session="ses-2")
        assert len(logger.handlers) == 1
        logger.info("after switch")
        for handler in logger.handlers:
            handler.flush()
        assert _last_record(tmp_path / "tdcore.log")["session"] == "ses-2"

    def test_no_session_field_without_session(self, tmp_path: Path) -> None:
        logger = setup_logging(tmp_path)
        logger.info("anonymous")
        for handler in logger.handlers:
            handler.flush()
        assert "session" not in _last_record(tmp_path / "tdcore.log")
