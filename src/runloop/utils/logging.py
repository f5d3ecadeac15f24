"""Logging setup for the runtime.

Every record carries the id of the agent session that produced it (``-``
outside a session), so interleaved output from concurrent sessions can be
told apart in the shared log file.
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

__all__ = ["setup_logging", "get_log_path", "bind_session", "current_session", "SessionFilter"]

_DEFAULT_LOG_DIR = Path.home() / ".runloop" / "logs"
_LOG_FILE_NAME = "runloop.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "mcp")
_CONFIGURED = False
_LOG_PATH: Path | None = None
_SESSION: contextvars.ContextVar[str] = contextvars.ContextVar("runloop_session", default="-")


class SessionFilter(logging.Filter):
    """Stamps ``record.session`` with the session bound to the current task."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = _SESSION.get()
        return True


@contextmanager
def bind_session(session_id: str) -> Iterator[None]:
    """Tag records logged inside the block (and tasks spawned from it)."""

    token = _SESSION.set(session_id)
    try:
        yield
    finally:
        _SESSION.reset(token)


def current_session() -> str:
    return _SESSION.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file handler and optional console output."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    session_filter = SessionFilter()

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handlers.append(file_handler)
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(session_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("RUNLOOP_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
