import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional, TypeVar
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from bi_assistant.errors import AssistantError, TransportError

logger = structlog.get_logger()

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop the offset"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate(text: Optional[str], limit: int = 500) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Delay before retry number `attempt` (1-based): min(base * 2^(attempt-1), cap)
    """
    if attempt < 1:
        attempt = 1
    return min(base * (2 ** (attempt - 1)), cap)


async def race_with_timeout(awaitable: Awaitable[T], timeout: float, label: str = "call") -> T:
    """
    Await `awaitable` against a deadline.

    The losing branch is cancelled, so a timed out call does not keep running
    in the background. Raises TransportError on timeout.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError(f"{label} timed out after {timeout:g}s") from exc


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, AssistantError):
        return exc.retryable
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


# Retry decorator with capped exponential backoff
def with_retry(max_attempts: int = 3, base_seconds: float = 1.0, cap_seconds: float = 20.0):
    """Retry coroutines that fail with retryable errors, re-raising the last one"""
    def decorator(func):
        @retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_seconds, max=cap_seconds),
            retry=retry_if_exception(is_retryable),
            reraise=True
        )
        async def wrapper(*args: Any, **kwargs: Any):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                logger.warning("Retry attempt failed",
                               func=func.__name__,
                               error=str(e),
                               retryable=is_retryable(e))
                raise
        return wrapper
    return decorator
