from __future__ import annotations

from typing import Any

from ingestion.chain.worker import LiveTickWorker
from workerbee.runtime.driver import BaseDriver
from workerbee.runtime.modes import ObserveMode


class LiveDriver(BaseDriver):
    """
    Live observation driver.

    Semantics:
      - Starts at the head observed when the subscription starts.
      - Open-ended; stops only on unsubscribe or a fatal failure.
    """

    def __init__(self, *, start_position: int | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self._start_position = start_position

    def worker(self, start_position: int | None = None) -> LiveTickWorker:
        return LiveTickWorker(
            source=self.source,
            poll_interval_s=self.config.poll_interval_s,
            start_position=start_position,
            retry=self.config.retry,
        )

    async def run(self) -> None:
        await self.drive(self.worker(self._start_position), ObserveMode.LIVE)
