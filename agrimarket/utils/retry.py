# agrimarket/utils/retry.py
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar
import asyncpg
from ..config import Config
from ..errors import TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TRANSIENT_ERRORS)


async def retry_database_operation(operation: Callable[[], Awaitable[T]],
                                   max_retries: Optional[int] = None,
                                   delay: Optional[float] = None) -> T:
    """Run ``operation`` retrying transient database failures.

    Waits ``delay * 2 ** (attempt - 1)`` seconds between attempts and raises
    TransientInfraError once ``max_retries`` attempts have failed. Any other
    error propagates on the first occurrence.
    """
    max_retries = max_retries or Config.DB_RETRY_ATTEMPTS
    delay = Config.DB_RETRY_DELAY if delay is None else delay

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_retries + 1):
        try:
            return await operation()
        except TRANSIENT_ERRORS as e:
            last_error = e
            logger.warning(
                f"Database operation failed (attempt {attempt}/{max_retries}): {e}"
            )
            if attempt < max_retries:
                await asyncio.sleep(delay * 2 ** (attempt - 1))

    raise TransientInfraError(
        f"Database unavailable after {max_retries} attempts"
    ) from last_error
