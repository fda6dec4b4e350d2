from __future__ import annotations

import json
import logging

import pydantic
import pytest

from workerbee.exceptions.core import FatalFetchError, TransientFetchError
from workerbee.utils.config import EngineConfig, RetryPolicy
from workerbee.utils.retry import retry_async

_log = logging.getLogger("tests.retry")


def test_retry_delays_grow_and_cap():
    policy = RetryPolicy(max_retries=5, backoff_s=1.0, backoff_max_s=4.0, multiplier=2.0)
    assert list(policy.delays()) == [1.0, 2.0, 4.0, 4.0, 4.0]
    assert list(RetryPolicy(max_retries=0).delays()) == []


def test_config_is_frozen_and_validated():
    cfg = EngineConfig()
    with pytest.raises(pydantic.ValidationError):
        cfg.poll_interval_s = 1.0
    with pytest.raises(pydantic.ValidationError):
        EngineConfig(poll_interval_s=0)
    with pytest.raises(pydantic.ValidationError):
        RetryPolicy(max_retries=-1)


def test_config_from_file(tmp_path):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"poll_interval_s": 0.5, "retry": {"max_retries": 7}, "raw_cache_size": 0}))
    cfg = EngineConfig.from_file(path)
    assert cfg.poll_interval_s == 0.5
    assert cfg.retry.max_retries == 7
    assert cfg.raw_cache_size == 0
    assert cfg.heartbeat_every == 100


class Flaky:
    def __init__(self, failures: int, exc: type[Exception] = TransientFetchError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"fail #{self.calls}")
        return "ok"


@pytest.mark.asyncio
async def test_retry_recovers_within_budget(caplog):
    fn = Flaky(failures=3)
    policy = RetryPolicy(max_retries=3, backoff_s=0.001)
    with caplog.at_level(logging.WARNING, logger="tests.retry"):
        assert await retry_async(fn, policy=policy, logger=_log, operation="fetch_unit", position=9) == "ok"
    assert fn.calls == 4
    retries = [r for r in caplog.records if r.getMessage() == "ingestion.fetch_retry"]
    assert [r.context["retry_count"] for r in retries] == [1, 2, 3]
    assert retries[0].context["position"] == 9
    assert retries[0].context["category"] == "data_source_health"


@pytest.mark.asyncio
async def test_retry_exhaustion_escalates_to_fatal():
    fn = Flaky(failures=2)
    policy = RetryPolicy(max_retries=1, backoff_s=0.001)
    with pytest.raises(FatalFetchError) as ei:
        await retry_async(fn, policy=policy, logger=_log, operation="fetch_unit", position=9)
    assert fn.calls == 2
    assert ei.value.details["attempts"] == 2
    assert ei.value.details["position"] == 9
    assert isinstance(ei.value.__cause__, TransientFetchError)


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried():
    fn = Flaky(failures=1, exc=FatalFetchError)
    with pytest.raises(FatalFetchError):
        await retry_async(fn, policy=RetryPolicy(max_retries=5, backoff_s=0.001), logger=_log, operation="query")
    assert fn.calls == 1
