"""Route the ``threadloom`` logger tree to a rotating file, driven by :class:`ChatOptions`."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

from ..services.settings import DEFAULT_OPTIONS_PATH, ChatOptions

__all__ = ["LOG_FILE_NAME", "configure_logging", "log_file_path", "reset_logging"]

LOG_FILE_NAME = "threadloom.log"
PACKAGE_LOGGER = "threadloom"
# HTTP clients behind the OpenAI provider; only their warnings reach our log.
CLIENT_LOGGERS: tuple[str, ...] = ("openai", "httpx", "httpcore")

_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
_MAX_BYTES = 2_000_000
_BACKUP_COUNT = 5

# Handlers and logger levels owned by the last configure_logging() call.
_installed: list[tuple[logging.Logger, logging.Handler]] = []
_debug_loggers: list[logging.Logger] = []


def log_file_path(options: ChatOptions) -> Path:
    """Return where :func:`configure_logging` writes for *options*.

    ``options.log_dir`` wins; otherwise logs live next to the options file.
    """

    if options.log_dir:
        return Path(options.log_dir).expanduser() / LOG_FILE_NAME
    return DEFAULT_OPTIONS_PATH.parent / "logs" / LOG_FILE_NAME


def configure_logging(options: ChatOptions, *, console: bool = False) -> Path:
    """Attach threadloom's handlers and levels according to *options*.

    The root logger is left alone so an embedding editor keeps its own setup;
    records still propagate to it. Calling this again replaces the previous
    configuration instead of stacking handlers.
    """

    reset_logging()
    path = log_file_path(options)
    path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(_FORMAT)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)

    level = logging.getLevelName(options.log_level)
    package = logging.getLogger(PACKAGE_LOGGER)
    package.setLevel(level)
    _attach(package, handlers)

    for name in CLIENT_LOGGERS:
        client = logging.getLogger(name)
        client.setLevel(max(level, logging.WARNING))
        _attach(client, handlers)

    for suffix in options.debug_loggers:
        target = logging.getLogger(f"{PACKAGE_LOGGER}.{suffix.strip('.')}")
        target.setLevel(logging.DEBUG)
        _debug_loggers.append(target)

    package.debug("Logging to %s at %s", path, options.log_level)
    return path


def reset_logging() -> None:
    """Detach and close everything :func:`configure_logging` installed."""

    for logger, handler in _installed:
        logger.removeHandler(handler)
    for handler in {handler for _, handler in _installed}:
        handler.close()
    _installed.clear()
    for logger in _debug_loggers:
        logger.setLevel(logging.NOTSET)
    _debug_loggers.clear()


def _attach(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    for handler in handlers:
        logger.addHandler(handler)
        _installed.append((logger, handler))
