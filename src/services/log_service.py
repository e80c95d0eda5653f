"""Logging configuration for the stack orchestrator."""

import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class SizeAndTimeRotatingHandler(TimedRotatingFileHandler):
    """Log handler that rotates logs by both size and time."""

    def __init__(self, filename, max_bytes, backup_count=0, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, backupCount=backup_count, **kwargs)

    def shouldRollover(self, record):
        """Determine if rollover should occur (by time or file size)."""
        if int(time.time()) >= self.rolloverAt:
            return 1

        if self.stream and self.max_bytes > 0:
            self.stream.seek(0, os.SEEK_END)
            if self.stream.tell() >= self.max_bytes:
                return 1

        return 0

    def doRollover(self):
        super().doRollover()
        self.rolloverAt = self.computeRollover(int(time.time()))


def configure_logging(
    log_dir: str | None = "logs",
    log_file: str = "stack-orchestrator.log",
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,  # 5 MB
    backup_count: int = 7,
    console: bool = True,
    verbose: bool = False,
) -> logging.Logger:
    """Configure root logger with console and rotating file handlers.

    Args:
        log_dir: Directory for log files, or None to skip file logging.
        log_file: Log file name.
        level: Logging level.
        max_bytes: Max file size before rotation.
        backup_count: Number of backup files to keep.
        console: Whether to also log to console.
        verbose: Log engine and runtime internals at DEBUG regardless of level.

    Returns:
        Configured root logger.
    """
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else level)
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = SizeAndTimeRotatingHandler(
            filename=os.path.join(log_dir, log_file),
            when="midnight",
            interval=1,
            max_bytes=max_bytes,
            backup_count=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if verbose else level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    # Third-party HTTP chatter stays at WARNING even in verbose mode
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    return logger
