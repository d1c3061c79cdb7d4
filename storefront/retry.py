import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from storefront import config
from storefront.errors import StaleStockVersion

logger = structlog.get_logger(__name__)


def _log_retry(retry_state):
    logger.info(
        "stock_update_conflict_retrying",
        attempt=retry_state.attempt_number,
        sleep=round(retry_state.next_action.sleep, 4) if retry_state.next_action else None,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for optimistic stock updates.

    Waits grow exponentially from ``base_delay`` with full jitter, capped at
    ``max_delay``. Only ``StaleStockVersion`` is retried; the last one is
    re-raised once ``max_attempts`` is reached.
    """

    max_attempts: int = config.STOCK_RETRY_MAX_ATTEMPTS
    base_delay: float = config.STOCK_RETRY_BASE_DELAY
    max_delay: float = config.STOCK_RETRY_MAX_DELAY
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(StaleStockVersion),
            before_sleep=_log_retry,
            sleep=self.sleep,
            reraise=True,
        )


DEFAULT_RETRY_POLICY = RetryPolicy()
