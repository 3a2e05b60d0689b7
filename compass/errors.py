"""
Exception taxonomy and error logging for compass.

Each error class says whether retrying can help: the job queue re-runs a
failed job only when its error is retryable.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class CompassError(Exception):
    """Base class for all compass errors."""
    retryable = False


class ValidationError(CompassError):
    """Bad input from the caller. Raised synchronously, never retried."""


class NotFoundError(CompassError):
    """An entry or goal id that does not exist."""


class ConfigurationError(CompassError):
    """Unknown provider or missing credentials. Needs an operator fix."""


class ProviderConfigError(ConfigurationError):
    """A provider adapter could not be constructed."""


class ProviderCallError(CompassError):
    """A provider call failed in transport or returned invalid output."""
    retryable = True

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class SchemaValidationError(ProviderCallError):
    """Structured output did not match the request schema."""

    def __init__(self, message: str, path: str = "$", provider: Optional[str] = None):
        super().__init__(f"{path}: {message}", provider=provider)
        self.path = path


class QueueExhaustedError(CompassError):
    """A queued job was dropped after its last attempt."""

    def __init__(self, entry_id: str, attempts: int, last_error: Optional[str] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"Analysis of {entry_id} dropped after {attempts} attempts{detail}"
        )
        self.entry_id = entry_id
        self.attempts = attempts
        self.last_error = last_error


def _error_log_path() -> Path:
    """Resolve error log path, respecting COMPASS_STORE_PATH."""
    store = os.environ.get("COMPASS_STORE_PATH")
    if store:
        return Path(store) / "compass-errors.log"
    return Path.home() / ".compass" / "compass-errors.log"


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
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
