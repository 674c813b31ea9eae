"""Logging setup shared by the HTTP app and the CLI.

Everything goes to stdout; when a log directory is configured a rotating
``taskpal.log`` is written there as well.
"""
import logging
import logging.handlers
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(log_level: str = "info", log_dir: Optional[str] = None) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger("taskpal")
    root.setLevel(level)

    # Repeated calls (tests, CLI + serve) must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "taskpal.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.propagate = False
