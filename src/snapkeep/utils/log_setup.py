"""Logging setup for the command line"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB max per log file
LOG_BACKUP_COUNT = 5  # Number of rotated log files to keep
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_file: Path | None, verbose: bool = False) -> logging.Logger:
    """Attach a rotating file handler and a stderr console handler to the root logger

    The file always receives INFO and above. The console stays quiet apart
    from critical records, since the CLI reports failures itself; ``verbose``
    shows everything.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Idempotent across repeated CLI invocations in one process
    for handler in list(root.handlers):
        if getattr(handler, "_snapkeep", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8")
        except OSError as e:
            logging.getLogger("snapkeep").warning(f"File logging disabled, cannot open {log_file}: {e}")
        else:
            fh.setLevel(logging.DEBUG if verbose else logging.INFO)
            fh.setFormatter(formatter)
            fh._snapkeep = True  # type: ignore[attr-defined]
            root.addHandler(fh)

    # Console handler
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if verbose else logging.CRITICAL)
    ch.setFormatter(formatter)
    ch._snapkeep = True  # type: ignore[attr-defined]
    root.addHandler(ch)

    return root
