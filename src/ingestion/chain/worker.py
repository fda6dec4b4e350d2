from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable

from ingestion.contracts.source import ChainDataSource
from ingestion.contracts.tick import ChainTick, Phase, normalize_tick
from workerbee.exceptions.core import ConfigurationError
from workerbee.utils.config import RetryPolicy
from workerbee.utils.retry import retry_async
from workerbee.utils.timer import now_ms

_LOG_SAMPLE_EVERY = 100

Emit = Callable[[ChainTick], "Awaitable[None] | None"]


def _log(logger: logging.Logger, level: int, event: str, **ctx: Any) -> None:
    logger.log(level, event, extra={"context": ctx})


class _EndOfStream:
    __slots__ = ("error",)

    def __init__(self, error: BaseException | None = None):
        self.error = error


class TickStream:
    """
    Pull-based tick channel between one worker and one consumer.

    Backpressure is strict: `put()` returns only after the consumer marked the
    tick done, so the worker never fetches tick N+1 while tick N is in flight.
    A worker failure is delivered to the consumer in stream order.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ChainTick | _EndOfStream] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, tick: ChainTick) -> None:
        if self._closed:
            raise RuntimeError("put() on a closed TickStream")
        await self._queue.put(tick)
        await self._queue.join()

    def close(self, error: BaseException | None = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_EndOfStream(error))

    async def next(self) -> ChainTick | None:
        """Next tick, None at end of stream; re-raises the worker's failure."""
        item = await self._queue.get()
        if isinstance(item, _EndOfStream):
            self._queue.task_done()
            if item.error is not None:
                raise item.error
            return None
        return item

    def task_done(self) -> None:
        self._queue.task_done()

    async def __aiter__(self) -> AsyncIterator[ChainTick]:
        while True:
            tick = await self.next()
            if tick is None:
                return
            try:
                yield tick
            finally:
                self.task_done()

    async def feed(self, worker: "TickWorker") -> None:
        """Run `worker` into this stream; ends the stream when the worker stops."""
        try:
            await worker.run(self.put)
        except asyncio.CancelledError:
            self.close()
            raise
        except Exception as exc:
            self.close(exc)
        else:
            self.close()


class TickWorker(ABC):
    """
    Tick source.
    The only responsibility is:
        position -> fetch (with retries) -> emit tick
    Condition evaluation and delivery are NOT handled here.
    """

    phase: Phase

    def __init__(
        self,
        *,
        source: ChainDataSource,
        retry: RetryPolicy | None = None,
        logger: logging.Logger | None = None,
    ):
        self._source = source
        self._retry = retry or RetryPolicy()
        self._logger = logger or logging.getLogger(f"ingestion.chain.{self.__class__.__name__}")
        self._emitted = 0
        self.last_position: int | None = None

    @abstractmethod
    async def run(self, emit: Emit) -> None:
        raise NotImplementedError

    async def _fetch(self, position: int) -> ChainTick:
        payload = await retry_async(
            lambda: self._source.fetch_unit(position),
            policy=self._retry,
            logger=self._logger,
            operation="fetch_unit",
            position=position,
        )
        return normalize_tick(position=position, payload=payload, observed_ts=now_ms(), phase=self.phase)

    async def _head(self) -> int:
        head = await retry_async(
            self._source.get_current_position,
            policy=self._retry,
            logger=self._logger,
            operation="get_current_position",
        )
        return int(head)

    async def _emit(self, emit: Emit, tick: ChainTick) -> None:
        r = emit(tick)
        if inspect.isawaitable(r):
            await r
        self._emitted += 1
        self.last_position = tick.position
        if self._emitted % _LOG_SAMPLE_EVERY == 0:
            _log(
                self._logger,
                logging.INFO,
                "ingestion.tick_progress",
                worker=type(self).__name__,
                position=tick.position,
                emitted=self._emitted,
            )

    async def _supervised(self, body: Callable[[], Awaitable[None]], **ctx: Any) -> None:
        _log(self._logger, logging.INFO, "ingestion.worker_start", worker=type(self).__name__, **ctx)
        stop_reason = "exit"
        try:
            await body()
        except asyncio.CancelledError:
            stop_reason = "cancelled"
            raise
        except Exception as exc:
            stop_reason = "error"
            _log(
                self._logger,
                logging.WARNING,
                "ingestion.worker_error",
                worker=type(self).__name__,
                err_type=type(exc).__name__,
                err=str(exc),
                last_position=self.last_position,
            )
            raise
        finally:
            _log(
                self._logger,
                logging.INFO,
                "ingestion.worker_stop",
                worker=type(self).__name__,
                stop_reason=stop_reason,
                emitted=self._emitted,
                last_position=self.last_position,
            )


class HistoricalTickWorker(TickWorker):
    """Replays [start, end] inclusive, as fast as the consumer allows, then stops."""

    phase: Phase = "past"

    def __init__(self, *, source: ChainDataSource, start: int, end: int, **kwargs: Any):
        super().__init__(source=source, **kwargs)
        if start < 1 or end < start:
            raise ConfigurationError(f"invalid historical range [{start}, {end}]", start=start, end=end)
        self.start = int(start)
        self.end = int(end)

    async def run(self, emit: Emit) -> None:
        async def body() -> None:
            for position in range(self.start, self.end + 1):
                await self._emit(emit, await self._fetch(position))

        await self._supervised(body, start=self.start, end=self.end)


class LiveTickWorker(TickWorker):
    """
    Polls the head every `poll_interval_s` and emits every position up to it.

    The first tick is `start_position` when seeded (hybrid hand-off), else the
    head observed at start. Never completes on its own.
    """

    phase: Phase = "live"

    def __init__(
        self,
        *,
        source: ChainDataSource,
        poll_interval_s: float = 2.0,
        start_position: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(source=source, **kwargs)
        if poll_interval_s <= 0:
            raise ConfigurationError(f"poll interval must be > 0s, got {poll_interval_s}")
        self._poll_interval_s = float(poll_interval_s)
        self._start_position = int(start_position) if start_position is not None else None

    async def run(self, emit: Emit) -> None:
        async def body() -> None:
            next_position = self._start_position
            while True:
                head = await self._head()
                if next_position is None:
                    next_position = head
                while next_position <= head:
                    await self._emit(emit, await self._fetch(next_position))
                    next_position += 1
                await asyncio.sleep(self._poll_interval_s)

        await self._supervised(
            body,
            start_position=self._start_position,
            poll_interval_ms=int(self._poll_interval_s * 1000),
        )
