"""
Logging configuration for compass.

Library loggers are quiet unless --verbose or COMPASS_VERBOSE=1 is given.
Every open store also writes INFO-level pipeline events (queueing, attempts,
retries, dropped jobs) to its own rotating ops log.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# HTTP client libraries used by the provider SDKs
_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "google_genai", "urllib3")


def configure_quiet_mode(quiet: bool = True):
    """
    Quiet the provider SDKs and their HTTP clients.

    Request-level logging drops to WARNING and Python warnings are
    ignored.

    Args:
        quiet: If False, leave logger levels and warnings untouched.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("compass").setLevel(logging.DEBUG)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a compass store.

    Writes to {store_path}/compass-ops.log using a rotating file handler
    (1MB max, 3 backups), independent of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / "compass-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(threadName)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    compass_logger = logging.getLogger("compass")
    compass_logger.addHandler(handler)
    # Ensure compass logger allows INFO through even in quiet mode
    if compass_logger.level == logging.NOTSET or compass_logger.level > logging.INFO:
        compass_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    logging.getLogger("compass").removeHandler(handler)
    handler.close()
