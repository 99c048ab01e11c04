"""Loguru configuration shared by the runner, scripts and demo.

Modules log through ``logger`` from here with ``key=value`` message fields:

    logger.info(f"Trade executed | bot={key} pair={pair} action=buy")
"""
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: Optional[str] = "sentinel.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> List[int]:
    """Replace loguru's default handler with the bot engine sinks.

    Args:
        log_file: Rotating log file, or None for console only
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        enable_console: Also log to stderr

    Returns:
        Handler ids of the sinks that were added
    """
    level = level.upper()
    _logger.remove()
    handler_ids = []

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # diagnose=False keeps local variables (credentials) out of tracebacks on disk
        handler_ids.append(_logger.add(
            str(log_path),
            format=LOG_FORMAT,
            level=level,
            rotation="100 MB",
            retention="7 days",
            diagnose=False,
        ))

    if enable_console:
        handler_ids.append(_logger.add(sys.stderr, format=LOG_FORMAT, level=level, colorize=True))

    return handler_ids


logger = _logger
