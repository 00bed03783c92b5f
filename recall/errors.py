"""
Error taxonomy and error logging for recall.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class RecallError(Exception):
    """Base class for all recall errors."""


class ConfigError(RecallError, ValueError):
    """
    Invalid configuration: embedding dimension mismatch, fusion weight
    outside [0, 1], malformed config file.

    Raised at construction time and never retried.
    """


class StorageError(RecallError):
    """The durable item store is unavailable, full, closed or corrupt."""


class InitializationError(RecallError):
    """
    Startup (store open + index rebuild) failed.

    The same instance is delivered to every caller that waited on the
    failed attempt. The original fault is chained as ``__cause__``.
    """

    def __init__(self, message: str, attempt: int = 0):
        super().__init__(message)
        self.attempt = attempt


class QueryError(RecallError, ValueError):
    """Malformed input from a caller. Recoverable; the caller may retry."""


class NotFoundError(RecallError, KeyError):
    """Direct lookup of an item id that does not exist."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


def _error_log_path() -> Path:
    """Resolve error log path, respecting RECALL_STORE_PATH."""
    store = os.environ.get("RECALL_STORE_PATH")
    if store:
        return Path(store) / "recall-errors.log"
    return Path.home() / ".recall" / "recall-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Error log unavailable; keep the original failure visible
    return log_path
