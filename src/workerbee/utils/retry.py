from __future__ import annotations

import asyncio
from logging import Logger
from typing import Any, Awaitable, Callable, TypeVar

from workerbee.exceptions.core import FatalFetchError, TransientFetchError
from workerbee.utils.config import RetryPolicy
from workerbee.utils.logger import log_data_source

T = TypeVar("T")


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    logger: Logger,
    operation: str,
    **context: Any,
) -> T:
    """Await ``fn()``, retrying TransientFetchError per ``policy``.

    Exhausted retries escalate to FatalFetchError chained to the last failure.
    Any other exception propagates on the first occurrence.
    """
    delays = policy.delays()
    retry_count = 0
    while True:
        try:
            return await fn()
        except TransientFetchError as exc:
            delay = next(delays, None)
            if delay is None:
                log_data_source(
                    logger,
                    "ingestion.fetch_exhausted",
                    operation=operation,
                    retry_count=retry_count,
                    err_type=type(exc).__name__,
                    err=str(exc),
                    **context,
                )
                raise FatalFetchError(
                    f"{operation} failed after {retry_count + 1} attempts: {exc}",
                    operation=operation,
                    attempts=retry_count + 1,
                    **context,
                ) from exc
            retry_count += 1
            log_data_source(
                logger,
                "ingestion.fetch_retry",
                operation=operation,
                retry_count=retry_count,
                backoff_ms=int(delay * 1000),
                err_type=type(exc).__name__,
                err=str(exc),
                **context,
            )
            await asyncio.sleep(delay)
