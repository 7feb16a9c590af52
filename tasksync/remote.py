import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from pydantic import BaseModel

from .errors import RemoteError, RetriesExhaustedError
from .models import PartitionFilter, QueryPage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteQueryAdapter(Protocol):
    async def query(self, resource: str, filter: Optional[PartitionFilter] = None,
                    cursor: Optional[str] = None, page_size: int = 25) -> QueryPage:
        ...

    async def fetch_by_id(self, resource: str, external_id: str) -> Dict[str, Any]:
        ...


class RetryPolicy(BaseModel):
    max_attempts: int = 4
    base_backoff_s: float = 1.0
    max_backoff_s: float = 30.0
    jitter: float = 0.25

    def backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (0-based): base * 2^attempt, capped, +/- jitter."""
        if retry_after is not None:
            return min(retry_after, self.max_backoff_s)
        delay = min(self.base_backoff_s * (2 ** attempt), self.max_backoff_s)
        return max(0.0, delay + delay * self.jitter * (random.random() * 2 - 1))


class RetryingAdapter:
    """
    Wraps a RemoteQueryAdapter and retries transient failures (rate limiting, network)
    with bounded exponential backoff. Fatal errors pass straight through; exhausted
    retries surface as RetriesExhaustedError.
    """

    def __init__(self, adapter: RemoteQueryAdapter, policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.adapter = adapter
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    async def _call(self, context: str, operation: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self.policy.max_attempts)
        for attempt in range(attempts):
            try:
                return await operation()
            except RemoteError as e:
                if not e.retryable:
                    logger.error(f"{context} failed (non-retryable): {e}")
                    raise
                if attempt + 1 >= attempts:
                    logger.error(f"{context} failed after {attempts} attempts: {e}")
                    raise RetriesExhaustedError(e, attempts) from e
                delay = self.policy.backoff(attempt, getattr(e, "retry_after", None))
                logger.warning(f"{context} failed (attempt {attempt + 1}/{attempts}), retrying in {delay:.1f}s: {e}")
                await self.sleep(delay)

    async def query(self, resource: str, filter: Optional[PartitionFilter] = None,
                    cursor: Optional[str] = None, page_size: int = 25) -> QueryPage:
        return await self._call(
            f"Query {resource} ({filter.name if filter else 'all'})",
            lambda: self.adapter.query(resource, filter=filter, cursor=cursor, page_size=page_size),
        )

    async def fetch_by_id(self, resource: str, external_id: str) -> Dict[str, Any]:
        return await self._call(
            f"Fetch {resource} {external_id}",
            lambda: self.adapter.fetch_by_id(resource, external_id),
        )
