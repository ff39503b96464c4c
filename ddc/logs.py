"""Logging setup for the ddc command line."""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE = "ddc.log"


def verbosity_level(verbose: int) -> int:
    """Map a -v count to a logging level."""
    if verbose >= 3:
        return logging.DEBUG
    if verbose == 2:
        return logging.INFO
    if verbose == 1:
        return logging.WARNING
    return logging.ERROR


def setup_logging(verbose: int = 0, log_file: Optional[str] = LOG_FILE) -> None:
    """Log to stderr at the requested verbosity and to ``log_file`` at DEBUG.

    The file log is what ends up inside the archive, so it always gets
    everything.
    """
    root = logging.getLogger("ddc")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(verbosity_level(verbose))
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)


def close_logging() -> None:
    root = logging.getLogger("ddc")
    for handler in list(root.handlers):
        handler.flush()
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
