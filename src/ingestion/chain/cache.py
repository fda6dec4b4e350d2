from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any, Mapping, Sequence

from ingestion.contracts.source import Call, ChainDataSource, Raw


class CachedChainSource(ChainDataSource):
    """
    Raw-unit cache shared by every subscription reading the same source.

    Semantics:
      - Keyed by position; LRU eviction beyond `max_units`.
      - Concurrent fetches of one position are coalesced into one upstream call.
      - Failures are NOT cached; the next caller fetches again.
      - Head and query calls pass through uncached.
    """

    def __init__(self, inner: ChainDataSource, *, max_units: int = 256):
        if max_units <= 0:
            raise ValueError(f"max_units must be > 0, got {max_units}")
        self.inner = inner
        self.block_interval_ms = inner.block_interval_ms
        self._max_units = int(max_units)
        self._units: OrderedDict[int, Raw] = OrderedDict()
        self._inflight: dict[int, asyncio.Future[Raw]] = {}

    def __len__(self) -> int:
        return len(self._units)

    async def get_current_position(self) -> int:
        return await self.inner.get_current_position()

    async def fetch_unit(self, position: int) -> Raw:
        position = int(position)
        unit = self._units.get(position)
        if unit is not None:
            self._units.move_to_end(position)
            return unit

        fut = self._inflight.get(position)
        if fut is None:
            fut = asyncio.ensure_future(self.inner.fetch_unit(position))
            self._inflight[position] = fut
            fut.add_done_callback(lambda f, p=position: self._settle(p, f))
        return await asyncio.shield(fut)

    def _settle(self, position: int, fut: asyncio.Future[Raw]) -> None:
        self._inflight.pop(position, None)
        if fut.cancelled() or fut.exception() is not None:
            return
        self._units[position] = fut.result()
        self._units.move_to_end(position)
        while len(self._units) > self._max_units:
            self._units.popitem(last=False)

    async def resolve_relative(self, spec: str) -> tuple[int, int]:
        return await self.inner.resolve_relative(spec)

    async def query(self, method: str, params: Mapping[str, Any]) -> Any:
        return await self.inner.query(method, params)

    async def query_batch(self, calls: Sequence[Call]) -> list[Any]:
        return await self.inner.query_batch(calls)

    async def close(self) -> None:
        for fut in self._inflight.values():
            fut.cancel()
        self._inflight.clear()
        self._units.clear()
        await self.inner.close()
