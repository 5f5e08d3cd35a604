import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import LoggingSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

ROOT_LOGGER = "pscreen"

def configure_logging(settings: LoggingSettings, level_override=None) -> logging.Logger:
    """Attach console (and optionally rotating file) handlers to the pscreen logger.

    Calling it again replaces the handlers, so tests and repeated CLI runs in
    one process don't duplicate output.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level = level_override or settings.level
    logger.setLevel(level)
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    if settings.file:
        path = Path(settings.file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path, maxBytes=settings.max_bytes, backupCount=settings.backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Cannot write log file %s: %s", path, e)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger
