"""Logging configuration for mdmd.

Usage in other modules:
    import logging
    log = logging.getLogger(__name__)

    log.debug("Detailed info for debugging")
    log.warning("Unexpected but handled situation")

The log level can be configured via the MDMD_LOG_LEVEL environment variable:
    - DEBUG: Fingerprint decisions, reconcile operations
    - INFO: Per-command summaries
    - WARNING: Best-effort failures and drift (default)
    - ERROR: Errors that prevented an operation
"""

import logging
import os
import sys

LOG_LEVEL_ENV_VAR = "MDMD_LOG_LEVEL"

_quiet = False


def configure_logging() -> None:
    """Configure logging for the mdmd package.

    Call this once at application startup (the console-script entry point).
    Subsequent calls are no-ops.
    """
    root_logger = logging.getLogger("mdmd")

    if root_logger.handlers:
        return

    level_name = os.environ.get(LOG_LEVEL_ENV_VAR, "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    if _quiet:
        level = max(level, logging.ERROR)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt="[%(levelname)s] %(name)s: %(message)s"))

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Prevent propagation to root logger (avoids duplicate messages)
    root_logger.propagate = False


def set_quiet_mode(quiet: bool) -> None:
    """Suppress warnings from the mdmd logger (errors still print)."""
    global _quiet
    _quiet = quiet

    root_logger = logging.getLogger("mdmd")
    if quiet:
        root_logger.setLevel(max(root_logger.level, logging.ERROR))
        for handler in root_logger.handlers:
            handler.setLevel(max(handler.level, logging.ERROR))
