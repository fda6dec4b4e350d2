from __future__ import annotations

import asyncio

from ingestion.chain.worker import HistoricalTickWorker, LiveTickWorker
from workerbee.exceptions.core import ConfigurationError
from workerbee.runtime.driver import BaseDriver
from workerbee.runtime.modes import ObserveMode
from workerbee.utils.logger import log_lifecycle
from workerbee.utils.retry import retry_async


class PastDriver(BaseDriver):
    """
    Historical replay driver, optionally handing off to live observation.

    Semantics:
      - Relative bounds ("-1h") are resolved once, when the driver starts.
      - Replays [start, end] inclusive, one tick at a time.
      - Hybrid: after `end`, a live worker continues at `end + 1` with the
        same subscription state, so no position is skipped or repeated.
    """

    async def bounds(self) -> tuple[int, int]:
        spec = self.plan.observe
        if spec.relative is not None:
            start, end = await retry_async(
                lambda: self.source.resolve_relative(spec.relative),
                policy=self.config.retry,
                logger=self._logger,
                operation="resolve_relative",
                relative=spec.relative,
            )
        else:
            start, end = spec.start, spec.end
        if start is None or end is None or start < 1 or end < start:
            raise ConfigurationError(f"invalid historical range [{start}, {end}]", start=start, end=end)
        return int(start), int(end)

    async def run(self) -> None:
        try:
            start, end = await self.bounds()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_fatal(exc)

        log_lifecycle(
            self._logger,
            "runtime.replay_start",
            subscription=self.subscription_id,
            start=start,
            end=end,
            hybrid=self.plan.observe.mode is ObserveMode.HYBRID,
        )
        historical = HistoricalTickWorker(source=self.source, start=start, end=end, retry=self.config.retry)
        await self.drive(historical, ObserveMode.PAST)

        if self.plan.observe.mode is not ObserveMode.HYBRID:
            return

        self.state.carry_over(to_phase=ObserveMode.LIVE.value, at_position=end + 1)
        log_lifecycle(
            self._logger,
            "runtime.handoff",
            subscription=self.subscription_id,
            from_phase=ObserveMode.PAST.value,
            to_phase=ObserveMode.LIVE.value,
            position=end + 1,
            state_slots=len(self.state),
        )
        live = LiveTickWorker(
            source=self.source,
            poll_interval_s=self.config.poll_interval_s,
            start_position=end + 1,
            retry=self.config.retry,
        )
        await self.drive(live, ObserveMode.LIVE)
