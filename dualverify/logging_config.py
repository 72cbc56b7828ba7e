"""Centralized logging configuration for dualverify.

All modules should import their logger via:
    from dualverify.logging_config import get_logger
    logger = get_logger(__name__)

Logs are written to a rotating file at:
    ~/.dualverify/dualverify.log   (default)
    or $DUALVERIFY_LOG_FILE        (override)

Every record passes through a PII redaction filter before it is
formatted, so prompt or response text that slips into a log message
never reaches disk in clear.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
LOG_DIR = Path.home() / ".dualverify"
LOG_FILE = os.environ.get(
    "DUALVERIFY_LOG_FILE",
    str(LOG_DIR / "dualverify.log"),
)
LOG_LEVEL = os.environ.get("DUALVERIFY_LOG_LEVEL", "INFO")
MAX_BYTES = 10 * 1024 * 1024  # 10 MB per file
BACKUP_COUNT = 3
# Package loggers that share the file handler
NAMESPACES = ("dualverify", "api")

_initialized = False


class PIIRedactingFilter(logging.Filter):
    """Rewrite each record's message with PII spans redacted."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Imported lazily: the security package imports this module
        from .security.pii import redact_pii

        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True  # the handler reports the formatting error
        redacted = redact_pii(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _file_handler() -> logging.Handler:
    """Rotating file handler with the redaction filter attached.

    Falls back to stderr when the log directory cannot be created
    (read-only home, containers without a writable $HOME).
    """
    handler: logging.Handler
    try:
        Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_FILE, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
    except OSError:
        handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler.addFilter(PIIRedactingFilter())
    return handler


def setup_logging() -> None:
    """Attach one shared handler to the dualverify and api loggers.

    Idempotent: later calls (every get_logger) return immediately.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    handler = _file_handler()
    for namespace in NAMESPACES:
        logger = logging.getLogger(namespace)
        logger.setLevel(level)
        if handler not in logger.handlers:
            logger.addHandler(handler)

    logging.getLogger(NAMESPACES[0]).info(
        "Logging initialized -> %s (level=%s)", LOG_FILE, LOG_LEVEL
    )


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name``; sets up the shared handler on first use.

    Usage:
        logger = get_logger(__name__)
        logger.warning("Provider %s slow", name)
    """
    setup_logging()
    return logging.getLogger(name)
