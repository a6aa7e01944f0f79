#!/usr/bin/env python3
"""
Maggrab Retry Logic
===================

Async retry with exponential backoff for transient network failures.
Non-retryable errors (format errors, 4xx responses) propagate on the first
attempt; sleeps between attempts are ``asyncio.sleep`` so other feeds keep
running while one backs off.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..utils.exceptions import is_retryable_error
from ..utils.logging import get_logger_for_component


T = TypeVar('T')


@dataclass
class RetryConfig:
    """Backoff policy for one kind of request."""
    max_attempts: int = 3                   # Total attempts including the first
    base_delay: float = 1.0                # Delay before the second attempt
    max_delay: float = 60.0                # Cap applied before jitter
    jitter: bool = True                    # Spread delays by ±25%
    exponential_base: float = 2.0

    # Plain exceptions that are always transient
    retry_on_exceptions: tuple = (ConnectionError, TimeoutError)


class RetryManager:
    """Retries coroutines according to a RetryConfig."""

    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()
        self.logger = get_logger_for_component('retry_manager')

    async def retry_async(self,
                          func: Callable[..., Awaitable[T]],
                          *args,
                          config: Optional[RetryConfig] = None,
                          operation: Optional[str] = None,
                          **kwargs) -> T:
        """
        Retry an async function with exponential backoff.

        Args:
            func: Async function to retry
            *args: Function arguments
            config: Override default retry configuration
            operation: Name used in log messages (defaults to the function name)
            **kwargs: Function keyword arguments

        Returns:
            Function result if successful

        Raises:
            The last exception when every attempt failed, or the first
            non-retryable exception
        """
        retry_config = config or self.config
        name = operation or getattr(func, '__name__', 'operation')

        for attempt in range(1, retry_config.max_attempts + 1):
            try:
                result = await func(*args, **kwargs)

                if attempt > 1:
                    self.logger.info(f"Retry successful for {name} on attempt {attempt}")

                return result

            except Exception as e:
                if not self.should_retry(e, retry_config):
                    self.logger.debug(f"Not retrying {name} due to non-retryable exception: {e}")
                    raise

                if attempt >= retry_config.max_attempts:
                    self.logger.error(f"All {retry_config.max_attempts} attempts failed for {name}: {e}")
                    raise

                delay = self._calculate_delay(attempt, retry_config)
                self.logger.warning(
                    f"Attempt {attempt} failed for {name}: {e}. "
                    f"Retrying in {delay:.2f}s (attempt {attempt+1}/{retry_config.max_attempts})"
                )
                await asyncio.sleep(delay)

        raise RuntimeError(f"Retry loop for {name} ran with max_attempts={retry_config.max_attempts}")

    @staticmethod
    def should_retry(exception: Exception, config: RetryConfig) -> bool:
        """Determine if an exception should trigger a retry."""
        if isinstance(exception, config.retry_on_exceptions):
            return True
        return is_retryable_error(exception)

    def _calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
        delay = min(delay, config.max_delay)

        if config.jitter:
            jitter_amount = delay * 0.25
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)
