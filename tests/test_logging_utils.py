from __future__ import annotations

import io
import logging

import pytest

from logging_utils import LineCappedFileHandler, configure_root_logger, get_log_level, resolve_log_path


def _record(message: str) -> logging.LogRecord:
    return logging.LogRecord("lamps", logging.INFO, __file__, 1, message, None, None)


def test_log_path_follows_environment(monkeypatch, tmp_path) -> None:
    target = tmp_path / "custom"
    monkeypatch.setenv("LOG_DIR", str(target))

    assert resolve_log_path("lamps.log") == target / "lamps.log"
    assert target.is_dir()


def test_handler_restarts_log_after_max_lines(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    handler = LineCappedFileHandler("capped.log", max_lines=2)
    handler.setFormatter(logging.Formatter("%(message)s"))
    try:
        for message in ("one", "two", "three"):
            handler.emit(_record(message))
    finally:
        handler.close()

    assert (tmp_path / "capped.log").read_text(encoding="utf-8") == "three\n"


def test_handler_counts_existing_lines(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    (tmp_path / "existing.log").write_text("a\nb\n", encoding="utf-8")
    handler = LineCappedFileHandler("existing.log", max_lines=3)
    handler.setFormatter(logging.Formatter("%(message)s"))
    try:
        handler.emit(_record("c"))
        handler.emit(_record("d"))
    finally:
        handler.close()

    assert (tmp_path / "existing.log").read_text(encoding="utf-8") == "d\n"


@pytest.mark.parametrize(
    "value, expected",
    [("", logging.INFO), ("debug", logging.DEBUG), ("WARNING", logging.WARNING), ("15", 15), ("loud", logging.INFO)],
)
def test_get_log_level(monkeypatch, value, expected) -> None:
    monkeypatch.setenv("LOG_LEVEL", value)

    assert get_log_level() == expected


def test_handler_counts_every_line_of_a_record(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    handler = LineCappedFileHandler("multi.log", max_lines=3)
    handler.setFormatter(logging.Formatter("%(message)s"))
    try:
        handler.emit(_record("first\nsecond"))
        handler.emit(_record("third\nfourth"))
        assert handler.lines_written == 2
    finally:
        handler.close()

    assert (tmp_path / "multi.log").read_text(encoding="utf-8") == "third\nfourth\n"


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        if handler not in saved_handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(saved_level)


def test_configure_root_logger_writes_file_and_stream(monkeypatch, tmp_path, root_logger) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    stream = io.StringIO()

    file_handler, stream_handler = configure_root_logger("lamps.log", logging.DEBUG, stream)
    logging.getLogger("lamp_commander").debug("hello bus")

    assert isinstance(file_handler, LineCappedFileHandler)
    assert stream_handler.stream is stream
    assert root_logger.level == logging.DEBUG
    assert "hello bus" in stream.getvalue()
    assert "hello bus" in (tmp_path / "lamps.log").read_text(encoding="utf-8")


def test_configure_root_logger_replaces_its_own_handlers(monkeypatch, tmp_path, root_logger) -> None:
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    foreign = logging.NullHandler()
    root_logger.addHandler(foreign)
    try:
        first = configure_root_logger("lamps.log", stream=io.StringIO())
        second = configure_root_logger("lamps.log", stream=io.StringIO())

        assert all(handler not in root_logger.handlers for handler in first)
        assert all(handler in root_logger.handlers for handler in second)
        assert foreign in root_logger.handlers
    finally:
        root_logger.removeHandler(foreign)
