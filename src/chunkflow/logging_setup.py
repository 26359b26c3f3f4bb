import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .models import LoggingConfig

LOGGER_NAME = "chunkflow"

_TEXT_FMT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] - %(message)s"
_DATE_FMT = "%Y-%m-%dT%H:%M:%S%z"


def init_logging(config: Optional[LoggingConfig] = None, force: bool = False) -> logging.Logger:
    """
    Idempotent logging init:
    - Always logs to stdout.
    - Writes to a rotating file only when config.file is set.
    - Respects config.level.

    Pass force=True to replace handlers installed by an earlier call.
    """
    config = config or LoggingConfig()
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_chunkflow_inited", False) and not force:
        return logger

    level = getattr(logging, config.level.upper(), logging.INFO)
    logger.setLevel(level)
    logger.propagate = False

    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    formatter = logging.Formatter(_TEXT_FMT, datefmt=_DATE_FMT)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    # Quiet noisy libs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logger._chunkflow_inited = True  # type: ignore[attr-defined]
    logger.debug("Logging initialized at %s", config.level)
    return logger
