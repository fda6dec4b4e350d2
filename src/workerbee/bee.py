from __future__ import annotations

from typing import Any

from ingestion.chain.cache import CachedChainSource
from ingestion.contracts.source import ChainDataSource
from ingestion.contracts.tick import parse_relative_duration
from workerbee.collectors.builtin import default_registry
from workerbee.collectors.registry import CollectorRegistry
from workerbee.exceptions.core import ConfigurationError
from workerbee.queen import QueenBee
from workerbee.runtime.modes import ObserveMode, ObserveSpec
from workerbee.runtime.subscription import Subscription
from workerbee.utils.config import EngineConfig
from workerbee.utils.logger import get_logger, log_info


class WorkerBee:
    """
    Engine facade.

    Owns the explicit configuration, the collector registry and the (cached)
    data source shared by every subscription built from it. There is no
    global engine state: two WorkerBee instances never see each other.
    """

    def __init__(
        self,
        source: ChainDataSource,
        config: EngineConfig | None = None,
        registry: CollectorRegistry | None = None,
    ):
        if not isinstance(source, ChainDataSource):
            raise ConfigurationError(f"source must be a ChainDataSource, got {type(source).__name__}")
        self.config = config or EngineConfig()
        self.registry = registry if registry is not None else default_registry()
        self.registry.validate()
        self.raw_source = source
        if self.config.raw_cache_size > 0:
            self.source: ChainDataSource = CachedChainSource(source, max_units=self.config.raw_cache_size)
        else:
            self.source = source
        self._subscriptions: list[Subscription] = []
        self._logger = get_logger("workerbee.WorkerBee")
        log_info(
            self._logger,
            "workerbee.init",
            source=type(source).__name__,
            collectors=len(self.registry),
            raw_cache_size=self.config.raw_cache_size,
            poll_interval_s=self.config.poll_interval_s,
        )

    # -------------------------------------------------
    # Mode selection
    # -------------------------------------------------

    def observe_live(self) -> QueenBee:
        return QueenBee(self, ObserveSpec(mode=ObserveMode.LIVE))

    def observe_past(self, start_or_relative: int | str, end: int | None = None) -> QueenBee:
        """
        observe_past(100, 200)  : blocks 100..200 inclusive
        observe_past("-1h")     : the last hour of blocks, resolved at subscription start
        """
        if isinstance(start_or_relative, str):
            if end is not None:
                raise ConfigurationError("a relative range takes no end position")
            try:
                parse_relative_duration(start_or_relative)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            return QueenBee(self, ObserveSpec(mode=ObserveMode.PAST, relative=start_or_relative))

        start = start_or_relative
        if end is None:
            raise ConfigurationError("an absolute range needs an end position")
        for value in (start, end):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"block positions must be ints, got {value!r}")
        if start < 1 or end < start:
            raise ConfigurationError(f"invalid historical range [{start}, {end}]", start=start, end=end)
        return QueenBee(self, ObserveSpec(mode=ObserveMode.PAST, start=start, end=end))

    # -------------------------------------------------
    # Subscriptions
    # -------------------------------------------------

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def track(self, subscription: Subscription) -> None:
        self._subscriptions = [s for s in self._subscriptions if not s.guard.terminal]
        self._subscriptions.append(subscription)

    async def close(self) -> None:
        for sub in self._subscriptions:
            sub.unsubscribe()
        for sub in self._subscriptions:
            await sub.wait()
        self._subscriptions.clear()
        await self.source.close()

    async def __aenter__(self) -> "WorkerBee":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
