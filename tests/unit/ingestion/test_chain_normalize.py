from __future__ import annotations

import pytest

from ingestion.chain.normalize import HiveBlockNormalizer, normalize_operation
from ingestion.contracts.tick import normalize_tick, parse_relative_duration
from tests.helpers.fake_chain import CountingChainSource, chain


def test_both_operation_encodings_normalize_identically():
    appbase = {"type": "vote_operation", "value": {"voter": "a", "weight": 1}}
    condenser = ["vote", {"voter": "a", "weight": 1}]
    assert normalize_operation(appbase) == normalize_operation(condenser) == {
        "type": "vote",
        "value": {"voter": "a", "weight": 1},
    }


@pytest.mark.parametrize("bad", [None, "vote", ["vote"], {"type": "", "value": {}}, ["vote", "x"]])
def test_bad_operations_rejected(bad):
    with pytest.raises(ValueError):
        normalize_operation(bad)


def test_block_normalization():
    raw = {
        "block": {
            "block_id": "0000000a" + "00" * 16,
            "previous": "00000009" + "00" * 16,
            "timestamp": "2024-01-01T00:00:03",
            "witness": "w",
            "transaction_ids": ["t0"],
            "transactions": [{"operations": [["transfer", {"from": "a", "to": "b", "amount": "1.000 HIVE"}]]}],
        }
    }
    unit = HiveBlockNormalizer().normalize(raw=raw, position=10)

    assert unit["block_num"] == 10
    assert unit["timestamp"] == 1_704_067_203_000
    assert unit["transactions"][0]["trx_id"] == "t0"
    assert unit["transactions"][0]["operations"][0]["type"] == "transfer"


def test_block_number_mismatch_and_missing_timestamp():
    norm = HiveBlockNormalizer()
    with pytest.raises(ValueError):
        norm.normalize(raw={"block_num": 5, "timestamp": 1}, position=6)
    with pytest.raises(ValueError):
        norm.normalize(raw={"block_num": 5})
    with pytest.raises(ValueError):
        norm.normalize(raw={"timestamp": 1})


def test_normalize_tick_coerces_timestamps():
    t = normalize_tick(position=3, payload={"timestamp": 1_700_000_000}, observed_ts=1_700_000_001_000, phase="live")
    assert (t.position, t.timestamp, t.observed_ts, t.phase) == (3, 1_700_000_000_000, 1_700_000_001_000, "live")
    assert t.block_num == 3

    t2 = normalize_tick(position=4, payload={}, observed_ts=1_700_000_002, phase="past")
    assert t2.timestamp == t2.observed_ts == 1_700_000_002_000


@pytest.mark.parametrize(
    "spec,ms",
    [("-30s", 30_000), ("-15m", 900_000), ("-2h", 7_200_000), ("-1d", 86_400_000), ("-1.5 hours", 5_400_000)],
)
def test_parse_relative_duration(spec, ms):
    assert parse_relative_duration(spec) == ms


@pytest.mark.parametrize("spec", ["30s", "-", "-5y", "-0s", "", "-abc"])
def test_parse_relative_duration_rejects(spec):
    with pytest.raises(ValueError):
        parse_relative_duration(spec)


@pytest.mark.asyncio
async def test_resolve_relative_against_head():
    source = CountingChainSource(chain(1, 1000))
    assert await source.resolve_relative("-30s") == (991, 1000)
    assert await source.resolve_relative("-1s") == (1000, 1000)
    assert await source.resolve_relative("-1d") == (1, 1000)
