"""
Background timers for housekeeping sweeps.

Each sweep runs as its own asyncio task on a fixed interval, independent of
request handling. A failing sweep is logged and retried on the next tick.
"""

import asyncio
from typing import Awaitable, Callable, Union

from loguru import logger

SweepFn = Callable[[], Union[int, Awaitable[int]]]


async def run_periodically(name: str, interval: float, sweep: SweepFn) -> None:
    """
    Call sweep every interval seconds until cancelled.

    Args:
        name: Label used in log messages
        interval: Seconds between runs (first run after one interval)
        sweep: Sync or async callable returning the number of items removed
    """
    logger.debug(f"Periodic task '{name}' started (every {interval}s)")
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                result = sweep()
                if asyncio.iscoroutine(result):
                    result = await result
                if result:
                    logger.info(f"Periodic task '{name}' removed {result} entries")
            except Exception as e:
                logger.opt(exception=e).error(f"Periodic task '{name}' failed: {e}")
    except asyncio.CancelledError:
        logger.debug(f"Periodic task '{name}' stopped")
        raise
