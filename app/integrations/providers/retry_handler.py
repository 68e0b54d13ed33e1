"""
Provider Retry Handler
Adapter-level retries with exponential backoff and Retry-After support.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from app.integrations.exceptions import ProviderTokenExpiredError, ProviderTransientError

logger = logging.getLogger(__name__)


class RetryHandler:
    """
    Retries provider data calls that failed transiently.

    Supports:
    - Exponential backoff: 1s, 2s, 4s, 8s, 16s (max)
    - Retry-After from 429 responses
    - Maximum retry attempts

    Permanent errors and expired access tokens are raised immediately: the
    former cannot succeed on retry and the latter needs a token refresh,
    which is the coordinator's job.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        max_backoff: float = 16.0,
    ):
        """
        Initialize retry handler.

        Args:
            max_retries: Maximum number of retry attempts (default: 3)
            backoff_base: Base seconds for exponential backoff (default: 1.0)
            max_backoff: Maximum backoff seconds (default: 16.0)
        """
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff

    async def execute_with_retry(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs
    ) -> Any:
        """
        Execute a coroutine function with retry logic.

        Args:
            func: Async function to execute
            *args: Positional arguments for function
            **kwargs: Keyword arguments for function

        Returns:
            Function result

        Raises:
            ProviderTransientError: If all retries are exhausted
            ProviderPermanentError: Immediately, without retrying
        """
        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)

            except ProviderTokenExpiredError:
                raise

            except ProviderTransientError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "All retry attempts exhausted (status: %s) - %s",
                        e.status_code or "n/a",
                        e.message[:100],
                    )
                    raise

                wait_seconds = self._wait_seconds(e, attempt)
                logger.warning(
                    "Transient provider error (status: %s). Retrying after %.1f seconds (attempt %d/%d)...",
                    e.status_code or "n/a",
                    wait_seconds,
                    attempt + 1,
                    self.max_retries + 1,
                )
                await asyncio.sleep(wait_seconds)

    def _wait_seconds(self, error: ProviderTransientError, attempt: int) -> float:
        if error.retry_after is not None:
            return min(error.retry_after, self.max_backoff)
        return min(self.backoff_base * (2 ** attempt), self.max_backoff)
