import time
from contextlib import contextmanager

from .logger import get_logger, log_debug


@contextmanager
def timed_block(name: str, **context):
    """Profile execution time of a code block (debug log on exit)."""
    logger = get_logger("workerbee.timer")

    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = (time.perf_counter() - start) * 1000  # ms
        log_debug(logger, f"[TIMER] {name}", elapsed_ms=round(elapsed, 3), **context)


def now_ms() -> int:
    return int(time.time() * 1000)


"""
Example usage:
from workerbee.utils.timer import timed_block

with timed_block("runtime.tick", position=tick.position):
    matched = await evaluate(condition, ctx)
"""
