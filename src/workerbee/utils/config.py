from __future__ import annotations

import json
from pathlib import Path
from typing import Iterator

from pydantic import BaseModel, ConfigDict, Field


class RetryPolicy(BaseModel):
    """Bounded retries with exponential backoff.

    `max_retries` counts retries after the first attempt, so a fetch is tried
    at most ``max_retries + 1`` times.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(3, ge=0)
    backoff_s: float = Field(0.5, ge=0.0)
    backoff_max_s: float = Field(10.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)

    def delays(self) -> Iterator[float]:
        backoff = self.backoff_s
        for _ in range(self.max_retries):
            yield min(backoff, self.backoff_max_s)
            backoff = min(backoff * self.multiplier, self.backoff_max_s)


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    poll_interval_s: float = Field(2.0, gt=0.0, description="Live head polling cadence.")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    raw_cache_size: int = Field(256, ge=0, description="Raw units shared across subscriptions; 0 disables.")
    heartbeat_every: int = Field(100, ge=1, description="Ticks between heartbeat log lines.")
    run_id: str | None = None

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        with Path(path).open("r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))
