"""Parallelism settings for pg_restore."""
import multiprocessing
from typing import Union

from ..core.logging import get_logger

logger = get_logger(__name__)

# Bounds for the automatic job count: enough for meaningful parallelism,
# few enough not to overwhelm the destination server
MIN_AUTO_JOBS = 2
MAX_AUTO_JOBS = 8


def default_parallel_jobs() -> int:
    """CPU count clamped to the automatic bounds."""
    try:
        cpu_count = multiprocessing.cpu_count()
    except NotImplementedError:
        cpu_count = 4
    return max(MIN_AUTO_JOBS, min(MAX_AUTO_JOBS, cpu_count))


def parse_parallel_jobs(value: Union[str, int, None]) -> int:
    """Parse the parallel job setting from configuration.

    Supports:
    - Integer value (e.g., 4 or "4")
    - Percentage of available CPUs (e.g., "50%")
    - "auto" or empty for CPU count clamped to 2..8

    Args:
        value: Setting to parse

    Returns:
        Number of pg_restore jobs to use
    """
    default_jobs = default_parallel_jobs()

    if value is None or value == "":
        return default_jobs

    if isinstance(value, bool):
        logger.warning(f"Invalid parallel job count: {value}, using default: {default_jobs}")
        return default_jobs

    if isinstance(value, int):
        return max(1, value)

    text = str(value).strip().lower()

    if text == "auto":
        return default_jobs

    if text.endswith("%"):
        try:
            percentage = float(text[:-1])
            return max(1, int(multiprocessing.cpu_count() * percentage / 100))
        except ValueError:
            logger.warning(f"Invalid parallel job percentage: {text}, using default: {default_jobs}")
            return default_jobs

    try:
        return max(1, int(text))
    except ValueError:
        logger.warning(f"Invalid parallel job count: {text}, using default: {default_jobs}")
        return default_jobs
