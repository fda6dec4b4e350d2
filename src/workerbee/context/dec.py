from __future__ import annotations

import asyncio
import inspect
from collections import Counter
from logging import Logger
from typing import Any, Callable, Hashable, Mapping, Sequence, TypeVar

from ingestion.contracts.source import Call, ChainDataSource
from ingestion.contracts.tick import ChainTick
from workerbee.collectors.registry import CollectorSpec
from workerbee.collectors.resolver import DependencyResolver
from workerbee.context.store import SubscriptionState, TaggedStore
from workerbee.exceptions.core import CollectorError, ConfigurationError, WorkerBeeError
from workerbee.runtime.result import merge_fields
from workerbee.utils.config import RetryPolicy
from workerbee.utils.logger import get_logger, log_debug
from workerbee.utils.retry import retry_async

T = TypeVar("T")


def _retrieve(task: asyncio.Task) -> None:
    # Mark failures as retrieved; awaiting callers still receive them.
    if not task.cancelled():
        task.exception()


class EvaluationContext:
    """
    Data Evaluation Context (DEC) of a single tick.

    Responsibilities:
      - Run each collector at most once per tick, dependencies first.
      - Coalesce concurrent `get()` calls onto the same in-flight execution.
      - Cache failures for the rest of the tick (no retry within a tick).
      - Hold the tick-scoped store and the data surfaced by matched filters.

    Non-responsibilities:
      - Does NOT outlive its tick; `close()` cancels what is still running.
      - Does NOT synchronize the contents of store slots.
    """

    def __init__(
        self,
        tick: ChainTick,
        *,
        resolver: DependencyResolver,
        source: ChainDataSource,
        state: SubscriptionState | None = None,
        wants: Mapping[str, frozenset[str]] | None = None,
        retry: RetryPolicy | None = None,
        logger: Logger | None = None,
    ):
        self.tick = tick
        self.mode = resolver.mode
        self.state = state if state is not None else SubscriptionState()
        self._resolver = resolver
        self._source = source
        self._wants = {k: frozenset(v) for k, v in (wants or {}).items()}
        self._retry = retry or RetryPolicy()
        self._logger = logger or get_logger("workerbee.context.EvaluationContext")
        self._tasks: dict[str, asyncio.Task] = {}
        self._store = TaggedStore()
        self._surfaced: dict[str, Any] = {}
        self._closed = False
        self.executions: Counter[str] = Counter()

    @property
    def position(self) -> int:
        return self.tick.position

    @property
    def closed(self) -> bool:
        return self._closed

    # -------------------------------------------------
    # Collector access
    # -------------------------------------------------

    async def get(self, key: str) -> Any:
        if self._closed:
            raise WorkerBeeError(f"evaluation context of tick {self.position} is closed")
        try:
            plan = self._resolver.plan((key,))
        except ConfigurationError as exc:
            # undeclared read; subscribe() only checked declared requirements
            raise CollectorError(
                f"undeclared collector {key!r} at {self.position}: {exc.message}",
                collector=key,
                position=self.position,
                cause_kind=exc.kind,
            ) from exc
        for step in plan.order:
            self._spawn(step)
        executor = plan.served_by[key]
        value = await asyncio.shield(self._tasks[executor])
        if executor == key:
            return value
        try:
            return value[key]
        except (KeyError, TypeError) as exc:
            raise CollectorError(
                f"collector {executor!r} did not supply overridden key {key!r}",
                collector=executor,
                key=key,
                position=self.position,
            ) from exc

    def _spawn(self, key: str) -> None:
        if key in self._tasks:
            return
        spec = self._resolver.registry.get(key)
        task = asyncio.get_running_loop().create_task(self._execute(spec), name=f"collector:{key}:{self.position}")
        task.add_done_callback(_retrieve)
        self._tasks[key] = task

    async def _execute(self, spec: CollectorSpec) -> Any:
        self.executions[spec.key] += 1
        if spec.depends_on:
            await asyncio.gather(*(self.get(dep) for dep in spec.depends_on))
        try:
            out = spec.fn(self)
            if inspect.isawaitable(out):
                out = await out
        except (asyncio.CancelledError, WorkerBeeError):
            raise
        except Exception as exc:
            raise CollectorError(
                f"collector {spec.key!r} failed at {self.position}: {exc}",
                collector=spec.key,
                position=self.position,
            ) from exc
        log_debug(self._logger, "context.collector_done", collector=spec.key, position=self.position)
        return out

    # -------------------------------------------------
    # Data source access (retried)
    # -------------------------------------------------

    async def query(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        return await retry_async(
            lambda: self._source.query(method, params or {}),
            policy=self._retry,
            logger=self._logger,
            operation=method,
            position=self.position,
        )

    async def query_batch(self, calls: Sequence[Call]) -> list[Any]:
        return await retry_async(
            lambda: self._source.query_batch(calls),
            policy=self._retry,
            logger=self._logger,
            operation="batch:" + ",".join(method for method, _ in calls),
            position=self.position,
        )

    # -------------------------------------------------
    # Shared state
    # -------------------------------------------------

    def wants(self, key: str) -> frozenset[str]:
        """Parameter set declared for a parameterized collector (e.g. account names)."""
        return self._wants.get(key, frozenset())

    def access_store(self, token: Hashable, factory: Callable[[], T] | None = None) -> T:
        return self._store.access(token, factory)

    def surface(self, name: str, data: Any) -> None:
        merge_fields(self._surfaced, {name: data})

    @property
    def surfaced(self) -> dict[str, Any]:
        return dict(self._surfaced)

    # -------------------------------------------------
    # Lifecycle
    # -------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._store.clear()
