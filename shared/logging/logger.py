import logging
import os
from datetime import datetime
from pathlib import Path

LOG_DIR = Path(os.getenv("SENSES_LOG_DIR", "logs"))

_LOGGERS = {}
_RUN_STAMP = datetime.now().strftime("%Y%m%d-%H%M%S")


def _file_logging_enabled() -> bool:
    return os.getenv("SENSES_LOG_TO_FILE", "1").strip().lower() not in {"0", "false", "no", "off"}


def get_logger(
    name: str,
    *,
    runtime: str = "senses",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. core.allocator, discord.client)
    - runtime: log file prefix (senses | discord)

    All loggers of one runtime share a single log file per process run.
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    level = os.getenv("SENSES_LOG_LEVEL", "DEBUG").upper()
    logger.setLevel(getattr(logging, level, logging.DEBUG))

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    if _file_logging_enabled():
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        logfile = LOG_DIR / f"{runtime}-{_RUN_STAMP}.log"

        file_handler = logging.FileHandler(logfile, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger
