"""Logging setup for Lamp Commander.

Records go to stderr (stdout carries the operator menu) and to a file under
``LOG_DIR`` that is started over once it reaches ``LOG_MAX_LINES`` lines.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import TextIO


PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_MAX_LINES = 1000
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def resolve_log_path(filename: str | Path) -> Path:
    """Place *filename* in the log directory unless it is already absolute.

    ``LOG_DIR`` may be relative, in which case it is taken from the project
    root. The directory is created on demand.
    """

    path = Path(filename)
    if path.is_absolute():
        return path

    log_dir = Path(os.getenv("LOG_DIR") or "logs")
    if not log_dir.is_absolute():
        log_dir = PROJECT_ROOT / log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / path.name


def get_log_level(default: int = logging.INFO) -> int:
    """Resolve ``LOG_LEVEL`` (a name such as ``DEBUG`` or a number)."""

    raw = os.getenv("LOG_LEVEL", "").strip()
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper()) if raw else default
    return level if isinstance(level, int) else default


def _max_lines_from_env() -> int:
    try:
        value = int(os.getenv("LOG_MAX_LINES", ""))
    except ValueError:
        return DEFAULT_MAX_LINES
    return value if value > 0 else DEFAULT_MAX_LINES


class LineCappedFileHandler(logging.FileHandler):
    """File handler that truncates its file rather than let it grow past
    *max_lines* lines.

    Lines are counted as written, so a record carrying a traceback counts
    for every line it spans.
    """

    def __init__(self, filename: str | Path, max_lines: int | None = None) -> None:
        super().__init__(resolve_log_path(filename), mode="a", encoding="utf-8")
        self.max_lines = max_lines if max_lines and max_lines > 0 else _max_lines_from_env()
        self.lines_written = self._lines_on_disk()

    def _lines_on_disk(self) -> int:
        try:
            with open(self.baseFilename, "rb") as fh:
                return sum(1 for _ in fh)
        except FileNotFoundError:
            return 0

    def _truncate(self) -> None:
        if self.stream is not None:
            self.stream.seek(0)
            self.stream.truncate()
        self.lines_written = 0

    def emit(self, record: logging.LogRecord) -> None:
        try:
            lines = self.format(record).count("\n") + 1
        except Exception:
            self.handleError(record)
            return

        if self.lines_written and self.lines_written + lines > self.max_lines:
            self.acquire()
            try:
                self._truncate()
            finally:
                self.release()

        super().emit(record)
        self.lines_written += lines


def configure_root_logger(
    log_filename: str | Path,
    level: int | None = None,
    stream: TextIO | None = None,
) -> list[logging.Handler]:
    """Route every module's records to *log_filename* and to *stream*.

    Calling it again swaps out the handlers installed by the previous call;
    handlers added by anyone else are kept.

    Returns:
        The handlers that were installed
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_lamp_commander", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [
        LineCappedFileHandler(log_filename),
        logging.StreamHandler(stream if stream is not None else sys.stderr),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._lamp_commander = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(level if level is not None else get_log_level())
    return handlers
