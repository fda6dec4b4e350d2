from __future__ import annotations

import json

import pytest

import apps.run_observer as run_observer
from apps.run_observer import build_observer, build_parser, build_source, main
from ingestion.chain.source import BlockLogFileSource, HiveRpcSource
from tests.helpers.fake_chain import CountingChainSource, chain, fast_config, post
from workerbee.bee import WorkerBee
from workerbee.exceptions.core import ConfigurationError
from workerbee.filters.base import Or, atomics
from workerbee.runtime.modes import ObserveMode


def _bee() -> WorkerBee:
    return WorkerBee(CountingChainSource(chain(1, 3)), fast_config())


def test_flags_become_an_or_group_with_providers() -> None:
    args = build_parser().parse_args(
        [
            "--past", "1", "3",
            "--posts", "alice", "--posts", "bob",
            "--votes", "carol",
            "--provide-block-header",
        ]
    )
    plan = build_observer(_bee(), args).build()

    assert plan.observe.mode is ObserveMode.PAST
    assert (plan.observe.start, plan.observe.end) == (1, 3)
    assert isinstance(plan.condition, Or)
    assert [type(a.predicate).__name__ for a in atomics(plan.condition)] == ["PostsFilter", "VotesFilter"]
    assert next(atomics(plan.condition)).predicate.authors == ("alice", "bob")
    assert [p.result_field for p in plan.providers] == ["block"]


def test_relative_replay_with_live_tail() -> None:
    args = build_parser().parse_args(["--since=-1h", "--then-live", "--new-accounts"])
    plan = build_observer(_bee(), args).build()
    assert plan.observe.mode is ObserveMode.HYBRID
    assert plan.observe.relative == "-1h"


def test_no_filter_flags_is_a_configuration_error() -> None:
    args = build_parser().parse_args(["--live"])
    with pytest.raises(ConfigurationError):
        build_observer(_bee(), args).build()


def test_build_source(tmp_path) -> None:
    assert isinstance(build_source(build_parser().parse_args(["--live"])), HiveRpcSource)

    path = tmp_path / "blocks.jsonl"
    path.write_text(json.dumps({"block_num": 1, **chain(1, 1)[0]}) + "\n", encoding="utf-8")
    args = build_parser().parse_args(["--block-log", str(path), "--past", "1", "1"])
    assert isinstance(build_source(args), BlockLogFileSource)

    with pytest.raises(ConfigurationError):
        build_source(build_parser().parse_args(["--block-log", str(path), "--past", "1", "1", "--then-live"]))


@pytest.mark.asyncio
async def test_main_replays_block_log_to_json_lines(tmp_path, capsys, monkeypatch) -> None:
    monkeypatch.setattr(run_observer, "init_logging", lambda **kwargs: None)
    path = tmp_path / "blocks.jsonl"
    with path.open("w", encoding="utf-8") as f:
        for raw in chain(1, 3, {2: [[post("alice")]]}):
            f.write(json.dumps({"block_num": int(raw["block_id"][:8], 16), **raw}) + "\n")

    code = await main(["--block-log", str(path), "--past", "1", "3", "--posts", "alice", "--no-progress"])

    assert code == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert len(lines) == 1
    assert lines[0]["position"] == 2
    assert lines[0]["mode"] == "past"
    assert lines[0]["data"]["posts"]["alice"][0]["value"]["author"] == "alice"
