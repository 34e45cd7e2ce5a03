# pipewrap/logger.py
# Centralized logging utility.
# Status, rotation and data-loss events go to stderr so stdout stays free for echoed capture lines.

import sys

from loguru import logger

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} - {message}"


def setup_logging(level: str = "INFO"):
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    logger.debug("Logger initialized at level {}", level)
    return logger
