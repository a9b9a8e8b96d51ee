"""
Bounded retry with linearly increasing backoff for remote writes.

Backoff after failed attempt n (0-based) is base_delay * (n + 1):
0.5s, 1.0s, ... No wait follows the final attempt.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    on_failure: Optional[Callable[[BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> Any:
    """
    Run `operation` until it succeeds or `max_attempts` calls have failed.

    Returns the operation's result. When every attempt fails, calls
    `on_failure(last_error)` exactly once and re-raises the last error.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    last_error: Optional[BaseException] = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt + 1 < max_attempts:
                delay = base_delay * (attempt + 1)
                logger.warning(
                    f"{label} failed (attempt {attempt + 1}/{max_attempts}): {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await sleep(delay)

    logger.error(f"{label} failed after {max_attempts} attempts: {last_error}")
    if on_failure is not None:
        on_failure(last_error)
    raise last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings from configuration."""
    max_attempts: int = 3
    base_delay: float = 0.5

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_failure: Optional[Callable[[BaseException], None]] = None,
        label: str = "operation",
    ) -> Any:
        return await with_retry(
            operation,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            on_failure=on_failure,
            label=label,
        )
