import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class PollTimeout(TimeoutError):
    pass


async def poll(
    fetch: Callable[[], Awaitable[Optional[T]]],
    max_attempts: int = 10,
    initial_delay: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 30.0,
    description: str = "result",
) -> T:
    """
    Awaits ``fetch`` until it returns something other than None, sleeping
    between attempts with exponential backoff. Raises PollTimeout once
    ``max_attempts`` have been spent. Cancelling the caller cancels the sleep.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        result = await fetch()
        if result is not None:
            return result
        if attempt == max_attempts:
            break
        logger.debug(
            "Waiting for %s (attempt %s/%s, next in %.1fs)", description, attempt, max_attempts, delay
        )
        await asyncio.sleep(delay)
        delay = min(delay * factor, max_delay)

    raise PollTimeout(f"No {description} after {max_attempts} attempts")


def attempts_for_timeout(
    timeout: float, initial_delay: float = 1.0, factor: float = 2.0, max_delay: float = 30.0
) -> int:
    """Number of attempts whose cumulative backoff covers ``timeout`` seconds."""
    attempts, waited, delay = 1, 0.0, initial_delay
    while waited < timeout:
        waited += delay
        delay = min(delay * factor, max_delay)
        attempts += 1
    return attempts
