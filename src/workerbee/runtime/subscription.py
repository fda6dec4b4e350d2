from __future__ import annotations

import asyncio
import inspect
import itertools
from typing import Any, Callable, Mapping

from ingestion.contracts.source import ChainDataSource
from ingestion.contracts.tick import ChainTick
from workerbee.collectors.registry import CollectorRegistry
from workerbee.context.store import SubscriptionState
from workerbee.exceptions.core import ConfigurationError, ObserverError, ProviderEvaluationError, WorkerBeeError
from workerbee.runtime.driver import BaseDriver
from workerbee.runtime.lifecycle import LifecycleGuard, SubscriptionPhase
from workerbee.runtime.live import LiveDriver
from workerbee.runtime.modes import ObserveMode
from workerbee.runtime.past import PastDriver
from workerbee.runtime.plan import ObservationPlan
from workerbee.runtime.result import ObservationResult
from workerbee.utils.config import EngineConfig
from workerbee.utils.logger import get_logger, log_exception, log_lifecycle

_IDS = itertools.count(1)

_CALLBACKS = ("next", "error", "complete", "diagnostics")


class Observer:
    """
    Subscriber callbacks. Subclass and override what you need; each may be
    a plain method or a coroutine.

    next(result)        : one matched tick, strictly in tick order
    error(err)          : terminal failure (a WorkerBeeError with `kind`)
    complete()          : a bounded replay finished
    diagnostics(err)    : isolated provider failure, the tick still delivered
    """

    def next(self, result: ObservationResult) -> Any:
        return None

    def error(self, error: WorkerBeeError) -> Any:
        return None

    def complete(self) -> Any:
        return None

    def diagnostics(self, error: ProviderEvaluationError) -> Any:
        return None


class _CallbackObserver(Observer):
    def __init__(self, callbacks: Mapping[str, Callable[..., Any] | None]):
        self._callbacks = {k: v for k, v in callbacks.items() if v is not None}

    def next(self, result):
        fn = self._callbacks.get("next")
        return fn(result) if fn is not None else None

    def error(self, error):
        fn = self._callbacks.get("error")
        return fn(error) if fn is not None else None

    def complete(self):
        fn = self._callbacks.get("complete")
        return fn() if fn is not None else None

    def diagnostics(self, error):
        fn = self._callbacks.get("diagnostics")
        return fn(error) if fn is not None else None


def as_observer(obj: Any) -> Observer:
    """Accept an Observer, a mapping or object with callback members, or a bare `next` callable."""
    if isinstance(obj, Observer):
        return obj
    if isinstance(obj, Mapping):
        unknown = set(obj) - set(_CALLBACKS)
        if unknown:
            raise ConfigurationError(f"unknown observer callbacks: {sorted(unknown)}")
        return _CallbackObserver(obj)
    if any(callable(getattr(obj, name, None)) for name in _CALLBACKS):
        return _CallbackObserver({name: getattr(obj, name, None) for name in _CALLBACKS})
    if callable(obj):
        return _CallbackObserver({"next": obj})
    raise ConfigurationError(f"not an observer: {obj!r}")


class Subscription:
    """
    One running observation.

    Phases: IDLE -> RUNNING -> {COMPLETED | ERRORED | CANCELLED}.

    `unsubscribe()` is synchronous: once it returns no observer callback
    fires again, even if work that was in flight later resolves.
    """

    def __init__(
        self,
        *,
        plan: ObservationPlan,
        source: ChainDataSource,
        registry: CollectorRegistry,
        config: EngineConfig,
        observer: Any,
        on_progress: Callable[[ChainTick, bool], Any] | None = None,
        name: str | None = None,
    ):
        self.id = name or f"sub-{next(_IDS)}"
        self.plan = plan
        self.guard = LifecycleGuard()
        self.state = SubscriptionState()
        self.error: WorkerBeeError | None = None
        self._observer = as_observer(observer)
        self._on_progress = on_progress
        self._logger = get_logger("workerbee.runtime.Subscription")
        self._task: asyncio.Task | None = None
        self.driver = self._build_driver(source=source, registry=registry, config=config)

    # -------------------------------------------------
    # Public surface
    # -------------------------------------------------

    @property
    def phase(self) -> SubscriptionPhase:
        return self.guard.phase

    @property
    def active(self) -> bool:
        return self.guard.phase is SubscriptionPhase.RUNNING

    def start(self) -> "Subscription":
        self.guard.enter(SubscriptionPhase.RUNNING)
        log_lifecycle(
            self._logger,
            "subscription.start",
            subscription=self.id,
            phase=self.phase.value,
            observe=self.plan.observe.mode.value,
            condition=self.plan.describe(),
            providers=[repr(p) for p in self.plan.providers],
        )
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.id)
        return self

    def unsubscribe(self) -> None:
        if self.guard.terminal:
            return
        self.guard.enter(SubscriptionPhase.CANCELLED)
        log_lifecycle(self._logger, "subscription.cancelled", subscription=self.id, phase=self.phase.value)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> SubscriptionPhase:
        """Wait until the subscription reached a terminal phase."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.phase

    # -------------------------------------------------
    # Internals
    # -------------------------------------------------

    def _build_driver(self, *, source: ChainDataSource, registry: CollectorRegistry, config: EngineConfig) -> BaseDriver:
        kwargs = dict(
            plan=self.plan,
            source=source,
            registry=registry,
            config=config,
            deliver=self._deliver,
            diagnose=self._diagnose,
            progress=self._progress if self._on_progress is not None else None,
            state=self.state,
            subscription_id=self.id,
        )
        if self.plan.observe.mode is ObserveMode.LIVE:
            return LiveDriver(**kwargs)
        return PastDriver(**kwargs)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> None:
        out = fn(*args)
        if inspect.isawaitable(out):
            await out

    async def _deliver(self, result: ObservationResult) -> None:
        if not self.active:
            return
        try:
            await self._call(self._observer.next, result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ObserverError(
                f"observer next() failed at {result.position}: {exc}",
                position=result.position,
            ) from exc

    async def _diagnose(self, err: ProviderEvaluationError) -> None:
        if not self.active:
            return
        try:
            await self._call(self._observer.diagnostics, err)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ObserverError(f"observer diagnostics() failed: {exc}") from exc

    async def _progress(self, tick: ChainTick, matched: bool) -> None:
        if not self.active:
            return
        await self._call(self._on_progress, tick, matched)

    async def _run(self) -> None:
        try:
            await self.driver.run()
        except asyncio.CancelledError:
            if not self.guard.terminal:
                self.guard.enter(SubscriptionPhase.CANCELLED)
            raise
        except WorkerBeeError as exc:
            await self._finish(SubscriptionPhase.ERRORED, exc)
        else:
            await self._finish(SubscriptionPhase.COMPLETED, None)

    async def _finish(self, phase: SubscriptionPhase, error: WorkerBeeError | None) -> None:
        if self.guard.terminal:
            return
        self.guard.enter(phase)
        self.error = error
        log_lifecycle(
            self._logger,
            f"subscription.{phase.value}",
            subscription=self.id,
            phase=phase.value,
            ticks=self.driver.ticks,
            matched=self.driver.matched,
            err_kind=error.kind if error is not None else None,
        )
        try:
            if error is not None:
                await self._call(self._observer.error, error)
            else:
                await self._call(self._observer.complete)
        except asyncio.CancelledError:
            raise
        except Exception:
            log_exception(self._logger, "subscription.observer_failed", subscription=self.id, phase=phase.value)
