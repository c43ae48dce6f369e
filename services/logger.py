"""
Shared application logger.

Every module does ``l = log.get_logger()``.  Console output is colored when
stdout is a terminal and honours ``LOG_LEVEL``; a per-run file under
``BRIDGE_LOG_DIR`` records everything from DEBUG up.  Credentials registered
through ``register_sensitive`` are masked in both.
"""
import logging
import os
import sys
from datetime import datetime

LOGGER_NAME = "cometbridge"

# level -> (tag, ANSI color)
_LEVEL_STYLE = {
    logging.DEBUG:    ("[DBG]", "\033[36m"),
    logging.INFO:     ("[INF]", "\033[32m"),
    logging.WARNING:  ("[WRN]", "\033[33m"),
    logging.ERROR:    ("[ERR]", "\033[31m"),
    logging.CRITICAL: ("[CRT]", "\033[91m\033[1m"),
}
_RESET = "\033[0m"

IS_TTY = sys.stdout.isatty()

LOG_DIR = os.environ.get("BRIDGE_LOG_DIR", "").strip() or "logs"


def _console_level() -> int:
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


# Credential strings to redact; filled by register_sensitive() once the
# config file is loaded
_sensitive: set[str] = set()

# Shorter values would mask ordinary words
_MIN_SECRET_LEN = 8


def register_sensitive(values) -> None:
    """Replace the set of strings that must never reach log output."""
    _sensitive.clear()
    _sensitive.update(v for v in values if isinstance(v, str) and len(v) >= _MIN_SECRET_LEN)


def mask(text: str) -> str:
    for secret in _sensitive:
        if secret in text:
            text = text.replace(secret, "***")
    return text


class MaskingFilter(logging.Filter):
    """Redacts registered credentials from every record before it is emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _sensitive:
            record.msg = mask(record.getMessage())
            record.args = ()
        return True


class ConsoleFormatter(logging.Formatter):
    """``[2025-01-01 12:00:00] [INF] | services/router.py:42 | message``"""

    def __init__(self, color: bool = IS_TTY):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        tag, color = _LEVEL_STYLE.get(record.levelno, (f"[{record.levelname}]", ""))
        if self.color and color:
            tag = f"{color}{tag}{_RESET}"

        try:
            where = os.path.relpath(record.pathname)
        except ValueError:
            # Different drive on Windows
            where = record.pathname

        stamp = datetime.fromtimestamp(record.created).strftime("[%Y-%m-%d %H:%M:%S]")
        line = f"{stamp} {tag} | {where}:{record.lineno} | {record.getMessage()}"
        if record.exc_info:
            line += "\n" + mask(self.formatException(record.exc_info))
        return line


def _build() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Re-import (e.g. under a reloader) must not stack handlers
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    for f in list(logger.filters):
        logger.removeFilter(f)
    logger.addFilter(MaskingFilter())

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter())
    console.setLevel(_console_level())
    logger.addHandler(console)

    os.makedirs(LOG_DIR, exist_ok=True)
    # e.g. cometbridge-20250915-150316061.log
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S%f")[:-3]
    file_handler = logging.FileHandler(os.path.join(LOG_DIR, f"{LOGGER_NAME}-{stamp}.log"), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(
        "[%(asctime)s] [%(levelname)s] | %(filename)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    file_handler.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)
    return logger


logger = _build()


def get_logger(name=None):
    """Return the shared logger; *name* is accepted for call-site symmetry only."""
    return logger
