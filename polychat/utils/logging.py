# polychat/utils/logging.py

import logging
import os
from pathlib import Path

from polychat.config.settings import BASE_DIR

LOG_DIR = Path(os.getenv("POLYCHAT_LOG_DIR", "").strip() or BASE_DIR / "polychat" / "logs")
LOG_FILE = LOG_DIR / "polychat.log"


def get_logger(name: str = "polychat") -> logging.Logger:
    """
    Return a logger that logs both to file and console.
    Avoids adding duplicate handlers on repeated imports.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid duplicate handlers

    logger.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # File handler (a read-only install keeps console logging only)
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(LOG_FILE, encoding="utf-8")
    except OSError as e:
        logger.warning("File logging disabled, cannot open %s: %s", LOG_FILE, e)
    else:
        fh.setLevel(logging.INFO)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    return logger
