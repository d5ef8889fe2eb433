"""Timeout + single retry with backoff for every call that leaves the process."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from sendlists.config import get_settings
from sendlists.services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    return isinstance(exc, Exception)


def _log_retry(service: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{service}: attempt {retry_state.attempt_number} failed: {retry_state.outcome.exception()!r}; "
            f"retrying in {retry_state.next_action.sleep}s"
        )

    return before_sleep


async def call_with_retry(
    service: str,
    func: Callable[..., Awaitable[Any]],
    *args,
    timeout: Optional[float] = None,
    retries: int = 1,
    backoff: Optional[float] = None,
    **kwargs,
) -> Any:
    """
    Await ``func(*args, **kwargs)`` under a timeout, retrying ``retries`` times.

    Delay before retry N is ``backoff * 2**(N-1)``. Errors flagged as not
    retryable (``ExternalServiceError.retryable is False``) are raised at once.
    After the last attempt the failure is wrapped in ``ExternalServiceError``.
    """
    settings = get_settings()
    timeout = settings.external_call_timeout_seconds if timeout is None else timeout
    backoff = settings.external_retry_backoff_seconds if backoff is None else backoff

    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=backoff),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry(service),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
    except ExternalServiceError as e:
        if e.retryable:
            logger.error(f"{service}: giving up after {retries + 1} attempts: {e}")
        raise
    except asyncio.TimeoutError as e:
        logger.error(f"{service}: giving up after {retries + 1} attempts: timed out after {timeout}s")
        raise ExternalServiceError(service, f"timed out after {timeout}s", original=e) from e
    except Exception as e:
        logger.error(f"{service}: giving up after {retries + 1} attempts: {e}")
        raise ExternalServiceError(service, str(e), original=e) from e
