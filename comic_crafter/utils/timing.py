import logging
import time
from contextlib import contextmanager

logger = logging.getLogger("ComicGen.Timing")

@contextmanager
def log_execution_time(description: str):
    """
    Logs the start, end and duration of a block.
    Failures are logged with their duration and re-raised unchanged.
    """
    logger.info(f"[START] {description}")
    start = time.perf_counter()
    try:
        yield
    except Exception:
        logger.error(f"[FAIL ] {description} - Failed after {time.perf_counter() - start:.2f} seconds.")
        raise
    logger.info(f"[ END ] {description} - Took {time.perf_counter() - start:.2f} seconds.")
