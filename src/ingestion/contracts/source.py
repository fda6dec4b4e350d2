from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

from ingestion.contracts.tick import parse_relative_duration
from workerbee.exceptions.core import FatalFetchError

Raw = Mapping[str, Any]
Call = tuple[str, Mapping[str, Any]]

DEFAULT_BLOCK_INTERVAL_MS = 3_000


class ChainDataSource(ABC):
    """
    Data source collaborator.

    The engine never talks to a chain directly; everything it knows about
    "what changes" comes through this contract.

    Failure contract:
        - TransientFetchError : retried by the caller's RetryPolicy
        - FatalFetchError     : terminates the subscription that hit it
    """

    block_interval_ms: int = DEFAULT_BLOCK_INTERVAL_MS

    @abstractmethod
    async def get_current_position(self) -> int:
        """Current head position (block number)."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_unit(self, position: int) -> Raw:
        """Normalized unit at `position` (see ingestion.chain.normalize)."""
        raise NotImplementedError

    async def resolve_relative(self, spec: str) -> tuple[int, int]:
        """Resolve '-<n><unit>' against the current head into [start, end]."""
        duration_ms = parse_relative_duration(spec)
        head = int(await self.get_current_position())
        units = max(1, math.ceil(duration_ms / self.block_interval_ms))
        return max(1, head - units + 1), head

    async def query(self, method: str, params: Mapping[str, Any]) -> Any:
        """Auxiliary current-state query (accounts, feed price, ...)."""
        raise FatalFetchError(
            f"{type(self).__name__} does not support query {method!r}",
            method=method,
        )

    async def query_batch(self, calls: Sequence[Call]) -> list[Any]:
        """Several queries; sources with a batch transport override this."""
        return list(await asyncio.gather(*(self.query(method, params) for method, params in calls)))

    async def close(self) -> None:
        return None
