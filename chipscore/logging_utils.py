from __future__ import annotations

import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping

LOG_DIR_ENV = "CHIPSCORE_LOG_DIR"
DEBUG_ENV = "CHIPSCORE_DEBUG"

_ROOT_LOGGER = "chipscore"
_LOG_FILE = "chipscore.log"
_CONSOLE_FORMAT = "%(level_prefix)s %(component)s: %(message)s"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_FILE_ONLY = "file_only"
_LEVEL_PREFIXES: Mapping[int, str] = MappingProxyType(
    {
        logging.DEBUG: "🐛",
        logging.INFO: "ℹ️",
        logging.WARNING: "⚠️",
        logging.ERROR: "❌",
        logging.CRITICAL: "💥",
    }
)

_LOGGER = logging.getLogger("chipscore.logging")


class _ConsoleEmojiFormatter(logging.Formatter):
    """``⚠️ pipeline: message``; the package prefix is implied on the console."""

    def format(self, record: logging.LogRecord) -> str:
        record.level_prefix = _LEVEL_PREFIXES.get(record.levelno, "")
        name = record.name
        if name.startswith(_ROOT_LOGGER + "."):
            name = name[len(_ROOT_LOGGER) + 1 :]
        record.component = name
        return super().format(record)


class _ConsoleFilter(logging.Filter):
    """Drops records meant for the log file only (tracebacks from ``log_exception``)."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not getattr(record, _FILE_ONLY, False)


class _ConsoleHandler(logging.StreamHandler):
    pass


class _FileHandler(logging.FileHandler):
    pass


def debug_enabled() -> bool:
    return bool(os.environ.get(DEBUG_ENV))


def get_log_dir() -> Path:
    configured = os.environ.get(LOG_DIR_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".cache" / "chipscore" / "logs"


def get_log_path() -> Path:
    return get_log_dir() / _LOG_FILE


def _console_handler() -> logging.Handler:
    handler = _ConsoleHandler(stream=sys.__stderr__)
    handler.setLevel(logging.DEBUG if debug_enabled() else logging.INFO)
    handler.setFormatter(_ConsoleEmojiFormatter(_CONSOLE_FORMAT))
    handler.addFilter(_ConsoleFilter())
    return handler


def _file_handler() -> logging.Handler | None:
    try:
        get_log_dir().mkdir(parents=True, exist_ok=True)
        handler = _FileHandler(get_log_path(), encoding="utf-8")
    except OSError as exc:
        _LOGGER.warning("File logging disabled: %s", exc)
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATE_FORMAT))
    return handler


def _owned_handlers(logger: logging.Logger) -> list[logging.Handler]:
    return [handler for handler in logger.handlers if isinstance(handler, (_ConsoleHandler, _FileHandler))]


def configure_logging(*, force: bool = False) -> None:
    """Attach the console and file handlers to the ``chipscore`` logger once.

    ``force`` rebuilds them, picking up changes to ``CHIPSCORE_LOG_DIR`` and
    ``CHIPSCORE_DEBUG``. The console handler is skipped when the host already
    configured the root logger, unless forced.
    """

    logger = logging.getLogger(_ROOT_LOGGER)
    owned = _owned_handlers(logger)
    if owned and not force:
        return
    for handler in owned:
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)
    if force or not logging.getLogger().handlers:
        logger.addHandler(_console_handler())
    file_handler = _file_handler()
    if file_handler is not None:
        logger.addHandler(file_handler)
    # Test harness handlers still see records.
    logger.propagate = True


def log_exception(context: str, exc: BaseException) -> Path | None:
    """Write ``exc`` and its traceback to the log file and return the file's path."""

    configure_logging()
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.error(
        "%s failed: %s: %s",
        context,
        type(exc).__name__,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={_FILE_ONLY: True},
    )
    for handler in logger.handlers:
        if isinstance(handler, _FileHandler):
            handler.flush()
            return Path(handler.baseFilename)
    return None


@contextmanager
def log_phase(logger: logging.Logger, phase: str) -> Iterator[None]:
    started = time.perf_counter()
    yield
    logger.debug("%s done in %.1f ms", phase, (time.perf_counter() - started) * 1000.0)
