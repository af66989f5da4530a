"""
Logging configuration — called once by the CLI entrypoint.

Modules log through ``logging.getLogger(__name__)``; this module only
decides where records go and how they look.

Console level precedence:
    --debug / --verbose / --quiet  >  PROMOTER_LOG_LEVEL  >  WARNING

PROMOTER_LOG_FILE adds a file handler (CI keeps it as a job artifact),
with its own threshold from PROMOTER_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping

ENV_LEVEL = "PROMOTER_LOG_LEVEL"
ENV_FILE = "PROMOTER_LOG_FILE"
ENV_FILE_LEVEL = "PROMOTER_LOG_FILE_LEVEL"

# Console output is for humans watching a pipeline; anything above INFO
# is printed bare, the way click output is.
_CONSOLE_FORMATS = {
    logging.DEBUG: ("%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s: %(message)s", "%H:%M:%S"),
    logging.INFO: ("%(asctime)s %(name)s: %(message)s", "%H:%M:%S"),
}
_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d %(message)s"


def resolve_level(
    *,
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Pick the console level name from CLI flags, then the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    env = os.environ if environ is None else environ
    return env.get(ENV_LEVEL) or "WARNING"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install console (stderr) and optional file handlers on the root logger.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.
    """
    console_level = _parse_level(level)
    fmt, datefmt = _CONSOLE_FORMATS.get(console_level, ("%(message)s", None))
    if console_level < logging.DEBUG:
        fmt, datefmt = _CONSOLE_FORMATS[logging.DEBUG]

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
        root.addHandler(file_handler)
        root_level = min(root_level, file_level)

    root.setLevel(root_level)


def setup_from_environment(**flags: bool) -> None:
    """``setup_logging`` driven by CLI flags plus the PROMOTER_LOG_* variables."""
    setup_logging(
        level=resolve_level(**flags),
        log_file=os.environ.get(ENV_FILE),
        log_file_level=os.environ.get(ENV_FILE_LEVEL),
    )


def _parse_level(level: str | None) -> int:
    """Level name → numeric level; unknown or empty names mean WARNING."""
    if not level:
        return logging.WARNING
    numeric = logging.getLevelName(level.strip().upper())
    return numeric if isinstance(numeric, int) else logging.WARNING
