"""
Logging configuration — one setup call for the whole run.

Called once at startup by main.py. Records logged with
``extra={"step": name}`` are tagged with the step they belong to, so
the console reads as a per-step transcript of the run:

    12:00:01 [crio-config] applying: Render CRI-O configuration
    12:00:01 Reloading systemd unit definitions
    12:00:03 [crio-service] applied: reloaded unit definitions; restarted crio

The command takes no flags; everything comes from the environment:
    NODEPROV_LOG_LEVEL       console level (INFO by default)
    NODEPROV_LOG_FILE        optional log file, appended to
    NODEPROV_LOG_FILE_LEVEL  its level (the console level by default)
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LEVEL = "NODEPROV_LOG_LEVEL"
ENV_FILE = "NODEPROV_LOG_FILE"
ENV_FILE_LEVEL = "NODEPROV_LOG_FILE_LEVEL"
DEFAULT_LEVEL = "INFO"

# console format by verbosity: (format, datefmt)
_CONSOLE_DEBUG = ("%(asctime)s %(levelname)-7s %(step_tag)s%(name)s:%(lineno)d %(message)s", "%H:%M:%S")
_CONSOLE_INFO = ("%(asctime)s %(step_tag)s%(message)s", "%H:%M:%S")
_CONSOLE_QUIET = ("%(levelname)s: %(step_tag)s%(message)s", None)

# the file keeps everything needed to reconstruct a failed run
_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(step_tag)s%(name)s — %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"


class StepTagFilter(logging.Filter):
    """Render a record's optional ``step`` attribute as a ``[name] `` prefix."""

    def filter(self, record: logging.LogRecord) -> bool:
        step = getattr(record, "step", None)
        record.step_tag = f"[{step}] " if step else ""
        return True


def setup_logging(
    level: str = DEFAULT_LEVEL,
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Replace the root logger's handlers with the nodeprov console/file pair.

    Raises:
        OSError: ``log_file`` cannot be opened for appending.
    """
    console_level = _parse_level(level)
    if console_level <= logging.DEBUG:
        fmt, datefmt = _CONSOLE_DEBUG
    elif console_level <= logging.INFO:
        fmt, datefmt = _CONSOLE_INFO
    else:
        fmt, datefmt = _CONSOLE_QUIET

    handlers: list[logging.Handler] = [
        _handler(logging.StreamHandler(sys.stderr), console_level, fmt, datefmt),
    ]
    root_level = console_level
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        handlers.append(
            _handler(
                logging.FileHandler(log_file, encoding="utf-8"),
                file_level, _FILE_FORMAT, _FILE_DATEFMT,
            )
        )
        root_level = min(root_level, file_level)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(root_level)


def setup_logging_from_env(environ: dict[str, str] | None = None) -> None:
    """Configure logging from ``NODEPROV_LOG_*`` environment variables."""
    env = os.environ if environ is None else environ
    setup_logging(
        level=env.get(ENV_LEVEL) or DEFAULT_LEVEL,
        log_file=env.get(ENV_FILE) or None,
        log_file_level=env.get(ENV_FILE_LEVEL) or None,
    )


def _handler(
    handler: logging.Handler, level: int, fmt: str, datefmt: str | None,
) -> logging.Handler:
    handler.setLevel(level)
    handler.addFilter(StepTagFilter())
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _parse_level(level: str | None) -> int:
    """Level name to its numeric value; unknown names fall back to INFO."""
    if not level:
        return logging.INFO
    numeric = logging.getLevelName(level.upper())
    return numeric if isinstance(numeric, int) else logging.INFO
