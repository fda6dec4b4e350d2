from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ObserveMode(Enum):
    """
    Observation mode of a subscription.

    Collectors declare the modes they can produce data in (LIVE, PAST).
    HYBRID subscriptions traverse both and therefore need both.
    """

    LIVE = "live"
    PAST = "past"
    HYBRID = "hybrid"

    def phases(self) -> frozenset["ObserveMode"]:
        if self is ObserveMode.HYBRID:
            return frozenset({ObserveMode.PAST, ObserveMode.LIVE})
        return frozenset({self})


@dataclass(frozen=True)
class ObserveSpec:
    """
    How a subscription observes the chain.

    Past bounds are either absolute (`start`, `end`) or a relative duration
    string like "-1h", resolved once against the head when the subscription
    starts.
    """

    mode: ObserveMode
    start: int | None = None
    end: int | None = None
    relative: str | None = None

    def with_live_tail(self) -> "ObserveSpec":
        if self.mode is not ObserveMode.PAST:
            raise ValueError(f"only past observation can hand off to live, got {self.mode.value!r}")
        return ObserveSpec(mode=ObserveMode.HYBRID, start=self.start, end=self.end, relative=self.relative)
