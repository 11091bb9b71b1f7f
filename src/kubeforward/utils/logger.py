"""
Logging setup built on loguru.

Every module gets a bound logger through get_logger(__name__). Sinks are
installed once by configure_logging(): stderr while running as a plain CLI,
a file while the terminal UI owns the screen.
"""

import sys
import traceback

from loguru import logger as _logger

from kubeforward.models.enums import LogLevel

_LEVEL_MAP = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
    LogLevel.ERROR: "ERROR",
}

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"name": "kubeforward"})


def get_logger(name: str):
    """Get a logger bound to a module name."""
    return _logger.bind(name=name)


def configure_logging(
    level: LogLevel = LogLevel.INFO,
    log_file: str | None = None,
    stderr: bool = True,
) -> None:
    """
    Replace all sinks according to the requested level and destination.

    Args:
        level: Verbosity level.
        log_file: Optional file path; rotated at 10 MB.
        stderr: Whether to also log to stderr. Disabled while the TUI runs.
    """
    loguru_level = _LEVEL_MAP.get(level, "INFO")
    full = level == LogLevel.FULL

    _logger.remove()
    if stderr:
        _logger.add(
            sys.stderr,
            level=loguru_level,
            format=_FORMAT,
            backtrace=full,
            diagnose=full,
        )
    if log_file:
        _logger.add(
            log_file,
            level=loguru_level,
            format=_FORMAT,
            rotation="10 MB",
            enqueue=True,
            backtrace=full,
            diagnose=full,
        )


def disable_logging() -> None:
    """Drop every sink (TUI without a log file)."""
    _logger.remove()


def format_traceback(exc: BaseException) -> str:
    """Render an exception with its traceback for debug logging."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
