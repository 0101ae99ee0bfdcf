"""Logging utilities for chunkflow."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

# Hint shown when a single job is large enough to take a while
LARGE_JOB_MESSAGE = """
================================================================================
This asset was split into {chunks} chunks ({hours:.1f}h of media).
Each chunk is uploaded and transcribed in turn; an interrupted run can be
resumed with the same command and completed chunks will be skipped.
================================================================================
"""


def get_logger(
    name: str = "chunkflow",
    level: int = logging.INFO,
    stream: TextIO = sys.stderr,
) -> logging.Logger:
    """Get a configured logger for chunkflow.

    Args:
        name: Logger name.
        level: Logging level.
        stream: Output stream.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(stream)
        handler.setLevel(level)

        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(level)
    return logger


def log_large_job_hint(logger: logging.Logger, chunk_count: int = 0, duration_hours: float = 0) -> None:
    """Log a hint about resumability for large chunked jobs.

    Args:
        logger: Logger instance.
        chunk_count: Number of chunks in the plan.
        duration_hours: Total media duration in hours.
    """
    should_hint = chunk_count > 10 or duration_hours > 1.0

    if should_hint:
        logger.info(LARGE_JOB_MESSAGE.format(chunks=chunk_count, hours=duration_hours))
