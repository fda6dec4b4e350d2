from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Literal

Phase = Literal["live", "past"]

_RELATIVE_RE = re.compile(r"^-\s*(\d+(?:\.\d+)?)\s*([a-z]+)$")

_UNIT_MS = {
    "s": 1_000,
    "sec": 1_000,
    "second": 1_000,
    "seconds": 1_000,
    "m": 60_000,
    "min": 60_000,
    "minute": 60_000,
    "minutes": 60_000,
    "h": 3_600_000,
    "hour": 3_600_000,
    "hours": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
    "days": 86_400_000,
}


@dataclass(frozen=True)
class ChainTick:
    """
    Canonical chain tick.

    This is the ONLY object allowed to cross the boundary:
        Tick worker -> TickStream -> Driver -> EvaluationContext

    Semantics:
        - `position`    : block number (or log sequence), strictly increasing per stream
        - `timestamp`   : block time (epoch ms int)
        - `observed_ts` : when the worker fetched the unit (epoch ms int)
        - `phase`       : "live" or "past"; a hybrid stream switches once
        - `payload`     : normalized unit (see ingestion.chain.normalize)
    """

    position: int
    timestamp: int
    observed_ts: int
    phase: Phase
    payload: Mapping[str, Any]

    @property
    def block_num(self) -> int:
        return self.position


def parse_relative_duration(spec: str) -> int:
    """Parse '-30s', '-15m', '-2h', '-1d' (or long unit names) into milliseconds."""
    if not isinstance(spec, str):
        raise ValueError(f"relative duration must be a string, got {type(spec).__name__}")
    m = _RELATIVE_RE.match(spec.strip().lower())
    if m is None:
        raise ValueError(f"invalid relative duration {spec!r}; expected '-<number><unit>'")
    value, unit = m.groups()
    if unit not in _UNIT_MS:
        raise ValueError(f"invalid relative duration unit {unit!r} in {spec!r}")
    ms = int(round(float(value) * _UNIT_MS[unit]))
    if ms <= 0:
        raise ValueError(f"relative duration must be positive: {spec!r}")
    return ms


def _coerce_epoch_ms(x: Any) -> int:
    """Coerce seconds-or-ms epoch, datetime or ISO string into epoch ms int.

    Heuristic: seconds are ~1e9, ms are ~1e12. Chain timestamps carry no
    zone and are UTC.
    """
    if x is None:
        raise ValueError("timestamp cannot be None")
    # bool is an int subclass; reject it
    if isinstance(x, bool):
        raise ValueError("invalid timestamp type: bool")
    if isinstance(x, (int, float)):
        v = float(x)
        if v < 10_000_000_000:  # seconds
            return int(round(v * 1000.0))
        return int(round(v))

    import pandas as pd

    try:
        ts = pd.Timestamp(x)
    except (TypeError, ValueError) as e:
        raise ValueError(f"invalid timestamp: {x!r}") from e
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.value // 1_000_000)


def normalize_tick(
    *,
    position: int,
    payload: Mapping[str, Any],
    observed_ts: Any,
    phase: Phase,
) -> ChainTick:
    """
    Wrap a normalized unit into a ChainTick.

    Rules:
        - observed_ts is ALWAYS provided by the tick worker
        - timestamp defaults to observed_ts if the unit has none
        - no mutation, no enrichment
    """
    observed = _coerce_epoch_ms(observed_ts)
    raw_ts = payload.get("timestamp")
    block_ts = _coerce_epoch_ms(raw_ts) if raw_ts is not None else observed
    return ChainTick(
        position=int(position),
        timestamp=block_ts,
        observed_ts=observed,
        phase=phase,
        payload=payload,
    )
