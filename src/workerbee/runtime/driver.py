from __future__ import annotations

import asyncio
import traceback
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from ingestion.chain.worker import TickStream, TickWorker
from ingestion.contracts.source import ChainDataSource
from ingestion.contracts.tick import ChainTick
from workerbee.collectors.registry import CollectorRegistry
from workerbee.collectors.resolver import DependencyResolver
from workerbee.context.dec import EvaluationContext
from workerbee.context.store import SubscriptionState
from workerbee.exceptions.core import ProviderEvaluationError, WorkerBeeError
from workerbee.filters.engine import evaluate
from workerbee.providers.engine import run_providers
from workerbee.runtime.modes import ObserveMode
from workerbee.runtime.plan import ObservationPlan
from workerbee.runtime.result import ObservationResult, merge_fields
from workerbee.utils.config import EngineConfig
from workerbee.utils.logger import get_logger, log_debug, log_error, log_heartbeat, log_match
from workerbee.utils.timer import timed_block

Deliver = Callable[[ObservationResult], Awaitable[None]]
Diagnose = Callable[[ProviderEvaluationError], Awaitable[None]]
Progress = Callable[[ChainTick, bool], Awaitable[None]]


def _retrieve(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class BaseDriver(ABC):
    """
    Base class for subscription drivers.

    Responsibilities:
      - Pull ticks from a TickStream, strictly one at a time.
      - Run the per-tick pipeline: context -> condition -> providers -> result.
      - Hand results to the subscription; never call the observer directly.

    Non-responsibilities:
      - Does NOT fetch blocks (tick workers do).
      - Does NOT decide subscription phases (the Subscription does).
    """

    def __init__(
        self,
        *,
        plan: ObservationPlan,
        source: ChainDataSource,
        registry: CollectorRegistry,
        config: EngineConfig,
        deliver: Deliver,
        diagnose: Diagnose,
        progress: Progress | None = None,
        state: SubscriptionState | None = None,
        subscription_id: str = "",
    ):
        self.plan = plan
        self.source = source
        self.registry = registry
        self.config = config
        self.state = state if state is not None else SubscriptionState()
        self.subscription_id = subscription_id
        self._deliver = deliver
        self._diagnose = diagnose
        self._progress = progress
        self._resolvers: dict[ObserveMode, DependencyResolver] = {}
        self._alerted = False
        self._logger = get_logger(f"workerbee.runtime.{self.__class__.__name__}")
        self.ticks = 0
        self.matched = 0

    # -------------------------------------------------
    # Hooks for subclasses
    # -------------------------------------------------

    @abstractmethod
    async def run(self) -> None:
        """Drive ticks until the source completes; raises on fatal failure."""
        raise NotImplementedError

    # -------------------------------------------------
    # Canonical tick loop
    # -------------------------------------------------

    def resolver(self, mode: ObserveMode) -> DependencyResolver:
        resolver = self._resolvers.get(mode)
        if resolver is None:
            resolver = DependencyResolver(self.registry, mode=mode)
            self._resolvers[mode] = resolver
        return resolver

    async def drive(self, worker: TickWorker, mode: ObserveMode) -> int | None:
        """Consume `worker` to its end. Returns the last processed position."""
        self.state.phase = mode.value
        stream = TickStream()
        producer = asyncio.get_running_loop().create_task(
            stream.feed(worker),
            name=f"{self.subscription_id}:{type(worker).__name__}",
        )
        producer.add_done_callback(_retrieve)
        resolver = self.resolver(mode)
        last: int | None = None
        try:
            while True:
                tick = await stream.next()
                if tick is None:
                    return last
                try:
                    await self.process(tick, resolver)
                    last = tick.position
                finally:
                    stream.task_done()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_fatal(exc)
        finally:
            if not producer.done():
                producer.cancel()

    async def process(self, tick: ChainTick, resolver: DependencyResolver) -> ObservationResult | None:
        ctx = EvaluationContext(
            tick,
            resolver=resolver,
            source=self.source,
            state=self.state,
            wants=self.plan.wants,
            retry=self.config.retry,
        )
        result: ObservationResult | None = None
        try:
            with timed_block("runtime.tick", position=tick.position, subscription=self.subscription_id):
                matched = await evaluate(self.plan.condition, ctx)
                if matched:
                    outcome = await run_providers(self.plan.providers, ctx)
                    for err in outcome.errors:
                        await self._diagnose(err)
                    data = merge_fields(ctx.surfaced, outcome.fields)
                    result = ObservationResult(
                        position=tick.position,
                        timestamp=tick.timestamp,
                        mode=ObserveMode(tick.phase),
                        data=data,
                    )
        finally:
            ctx.close()

        self.ticks += 1
        if result is not None:
            self.matched += 1
            log_match(
                self._logger,
                "runtime.tick_matched",
                subscription=self.subscription_id,
                position=tick.position,
                fields=sorted(result.data),
                collectors=dict(ctx.executions),
            )
            await self._deliver(result)
        else:
            log_debug(self._logger, "runtime.tick_skipped", subscription=self.subscription_id, position=tick.position)

        if self.ticks % self.config.heartbeat_every == 0:
            log_heartbeat(
                self._logger,
                "runtime.heartbeat",
                subscription=self.subscription_id,
                position=tick.position,
                ticks=self.ticks,
                matched=self.matched,
            )
        if self._progress is not None:
            await self._progress(tick, result is not None)
        return result

    # -------------------------------------------------
    # Failure handling
    # -------------------------------------------------

    def _alert_once(self, exc: BaseException) -> None:
        if self._alerted:
            return
        self._alerted = True
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        log_error(
            self._logger,
            "runtime.fatal_error",
            subscription=self.subscription_id,
            err_type=type(exc).__name__,
            err=str(exc),
            stack=stack,
        )

    def _handle_fatal(self, exc: BaseException) -> None:
        self._alert_once(exc)
        if isinstance(exc, WorkerBeeError):
            raise exc
        raise WorkerBeeError(str(exc), err_type=type(exc).__name__) from exc
