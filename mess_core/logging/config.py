# =============================================================================
# mess_core/logging/config.py
# Logging setup and timed operations for the offline client
# =============================================================================

import asyncio
import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Union


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_DIR = Path("logs")
LOG_LEVEL_ENV = "MESS_LOG_LEVEL"

# Per-request lines from the HTTP stack would drown the sync log
QUIET_LOGGERS = ("httpx", "httpcore", "urllib3", "asyncio")


def resolve_level(level: Union[int, str, None]) -> int:
    """
    Accept an int, a level name ("debug") or None.

    None falls back to $MESS_LOG_LEVEL, then INFO.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(
    level: Union[int, str, None] = None,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> Path:
    """
    Configure logging for the app and the sync core.

    Args:
        level: Level for everything except the quiet HTTP loggers
        log_to_file: Also write to a dated file
        log_filename: Overrides mess_offline_YYYY-MM-DD.log
        log_dir: Overrides ./logs

    Returns:
        Path of the log file (even when file logging is off)
    """
    directory = Path(log_dir) if log_dir is not None else LOG_DIR
    log_path = directory / (
        log_filename or f"mess_offline_{datetime.now().strftime('%Y-%m-%d')}.log"
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_to_file:
        directory.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=resolve_level(level),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("mess_core").info(f"Logging to {log_path if log_to_file else 'stdout'}")
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Times one operation and logs how it ended.

    Works with `with` and `async with`. A cancelled batch is logged as
    cancelled, not failed, and the CancelledError still propagates.

    Usage:
        async with LogContext(logger, "Sync batch (connectivity)") as ctx:
            ...
        ctx.elapsed  # seconds
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time: Optional[float] = None
        self.elapsed: Optional[float] = None

    def __enter__(self) -> "LogContext":
        self.start_time = time.perf_counter()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed = time.perf_counter() - self.start_time

        if exc_type is None:
            self.logger.log(self.level, f"{self.operation}... completed ({self.elapsed:.2f}s)")
        elif issubclass(exc_type, asyncio.CancelledError):
            self.logger.warning(f"{self.operation}... cancelled ({self.elapsed:.2f}s)")
        else:
            self.logger.error(
                f"{self.operation}... failed ({self.elapsed:.2f}s): {exc_val}",
                exc_info=True,
            )
        return False

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        return self.__exit__(exc_type, exc_val, exc_tb)
