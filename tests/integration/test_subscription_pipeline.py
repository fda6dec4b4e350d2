from __future__ import annotations

import asyncio
import logging

import pytest

from tests.helpers.fake_chain import (
    CountingChainSource,
    Recorder,
    accounts_handler,
    block,
    chain,
    fast_config,
    post,
    vote,
)
from workerbee.bee import WorkerBee
from workerbee.exceptions.core import (
    CollectorError,
    ConfigurationError,
    FatalFetchError,
    ModeUnavailableError,
    ObserverError,
    ProviderEvaluationError,
)
from workerbee.filters.base import And, Atomic, Or
from workerbee.filters.builtin import PostsFilter, VotesFilter
from workerbee.runtime.lifecycle import SubscriptionPhase
from workerbee.runtime.modes import ObserveMode
from workerbee.utils.config import RetryPolicy


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


def always(ctx) -> bool:
    return True


@pytest.mark.asyncio
async def test_alice_post_is_delivered_once_then_complete():
    source = CountingChainSource(chain(1, 3, {2: [[post("alice")]]}))
    bee = WorkerBee(source, fast_config())
    rec = Recorder()

    sub = bee.observe_past(1, 3).on_posts("alice").subscribe(rec)
    assert await sub.wait() is SubscriptionPhase.COMPLETED

    assert [kind for kind, _ in rec.events] == ["next", "complete"]
    result = rec.results[0]
    assert result.position == 2
    assert result.mode is ObserveMode.PAST
    assert list(result) == ["posts"]
    (event,) = result["posts"]["alice"]
    assert event["type"] == "comment"
    assert event["value"]["author"] == "alice"
    assert event["block_num"] == 2
    assert sub.driver.ticks == 3 and sub.driver.matched == 1


@pytest.mark.asyncio
async def test_and_binds_looser_than_consecutive_filters():
    events = {
        1: [[post("anna"), vote("carol")]],
        2: [[post("bob"), vote("dave")]],
        3: [[vote("carol")]],
        4: [[post("bob")], [vote("carol")]],
    }
    bee = WorkerBee(CountingChainSource(chain(1, 4, events)), fast_config())
    queen = bee.observe_past(1, 4).on_posts("anna").on_posts("bob").and_.on_votes("carol")

    plan = queen.build()
    assert plan.condition == And(
        Or(Atomic(PostsFilter(("anna",))), Atomic(PostsFilter(("bob",)))),
        Atomic(VotesFilter(("carol",))),
    )

    rec = Recorder()
    await queen.subscribe(rec).wait()
    assert rec.positions == [1, 4]
    assert set(rec.results[1]) == {"posts", "votes"}


@pytest.mark.asyncio
async def test_account_providers_squash_into_one_query():
    source = CountingChainSource(
        chain(1, 3),
        query_handlers={
            "database_api.find_accounts": accounts_handler(
                {"alice": {"balance": "1.000 HIVE"}, "bob": {"balance": "2.000 HIVE"}, "carol": {"balance": "0.000 HIVE"}}
            )
        },
    )
    rec = Recorder()
    async with WorkerBee(source, fast_config()) as bee:
        sub = (
            bee.observe_live()
            .on_block_number(3)
            .provide_accounts("carol")
            .provide_accounts("alice")
            .provide_accounts("bob")
            .subscribe(rec)
        )
        await wait_until(lambda: rec.results)
        sub.unsubscribe()

    assert source.queries["database_api.find_accounts"] == 1
    assert source.query_params == [("database_api.find_accounts", {"accounts": ["alice", "bob", "carol"]})]
    assert list(rec.results[0]["accounts"]) == ["carol", "alice", "bob"]
    assert rec.results[0]["accounts"]["bob"]["balance"] == "2.000 HIVE"


@pytest.mark.asyncio
async def test_ticks_are_delivered_in_order_under_latency():
    source = CountingChainSource(chain(100, 105), delays={101: 0.05, 103: 0.02, 104: 0.001})
    bee = WorkerBee(source, fast_config())
    rec = Recorder()

    await bee.observe_past(100, 105).on_custom(always).subscribe(rec).wait()
    assert rec.positions == [100, 101, 102, 103, 104, 105]
    assert rec.events[-1] == ("complete", None)


@pytest.mark.asyncio
async def test_live_fetch_recovers_within_retry_budget():
    source = CountingChainSource(chain(1, 3), fail_fetch={3: 2})
    rec = Recorder()
    cfg = fast_config(retry=RetryPolicy(max_retries=3, backoff_s=0.001))
    async with WorkerBee(source, cfg) as bee:
        sub = bee.observe_live().on_block_number(3).subscribe(rec)
        await wait_until(lambda: rec.results)
        sub.unsubscribe()

    assert rec.positions == [3]
    assert source.fetches[3] == 3
    assert not [e for e in rec.events if e[0] == "error"]


@pytest.mark.asyncio
async def test_live_fetch_errors_when_retries_run_out():
    source = CountingChainSource(chain(1, 3), fail_fetch={3: 2})
    rec = Recorder()
    cfg = fast_config(retry=RetryPolicy(max_retries=1, backoff_s=0.001))
    bee = WorkerBee(source, cfg)

    sub = bee.observe_live().on_block_number(3).subscribe(rec)
    assert await sub.wait() is SubscriptionPhase.ERRORED

    assert source.fetches[3] == 2
    assert [kind for kind, _ in rec.events] == ["error"]
    err = rec.events[0][1]
    assert isinstance(err, FatalFetchError)
    assert err.kind == "fetch.fatal"
    assert sub.error is err


@pytest.mark.asyncio
async def test_unsubscribe_during_provider_silences_observer():
    started = asyncio.Event()
    release = asyncio.get_running_loop().create_future()

    async def slow(ctx):
        started.set()
        return await asyncio.shield(release)

    bee = WorkerBee(CountingChainSource(chain(1, 3)), fast_config())
    rec = Recorder()
    sub = bee.observe_past(1, 3).on_custom(always).provide_custom("slow", slow).subscribe(rec)

    await started.wait()
    sub.unsubscribe()
    assert sub.phase is SubscriptionPhase.CANCELLED
    release.set_result("late")
    assert await sub.wait() is SubscriptionPhase.CANCELLED
    await asyncio.sleep(0.05)

    assert rec.events == []
    assert sub.driver.matched == 0


@pytest.mark.asyncio
async def test_mode_incompatible_declarations_fail_at_subscribe():
    bee = WorkerBee(CountingChainSource(chain(1, 3)), fast_config())
    rec = Recorder()

    with pytest.raises(ModeUnavailableError):
        bee.observe_past(1, 3).on_accounts_balance_change("alice").subscribe(rec)
    with pytest.raises(ModeUnavailableError):
        bee.observe_past(1, 3).then_live().on_feed_price_change(5).subscribe(rec)
    with pytest.raises(ConfigurationError):
        bee.observe_past(1, 3).on_posts("alice").provide_accounts("alice").subscribe(rec)
    with pytest.raises(ConfigurationError):
        bee.observe_past(1, 3).provide_block_data().subscribe(rec)
    with pytest.raises(ConfigurationError):
        bee.observe_past(1, 3).on_posts("alice").and_.subscribe(rec)
    with pytest.raises(ConfigurationError):
        bee.observe_live().then_live()
    with pytest.raises(ConfigurationError):
        bee.observe_past(5, 4)
    with pytest.raises(ConfigurationError):
        bee.observe_past("an hour ago")

    assert bee.subscriptions == []
    assert rec.events == []


@pytest.mark.asyncio
async def test_failed_provider_is_reported_and_tick_still_delivered(caplog):
    def boom(ctx):
        raise ValueError("node down")

    bee = WorkerBee(CountingChainSource(chain(1, 2)), fast_config())
    rec = Recorder()
    with caplog.at_level(logging.WARNING):
        sub = (
            bee.observe_past(1, 2)
            .on_block_number(2)
            .provide_block_header_data()
            .provide_custom("boom", boom)
            .subscribe(rec)
        )
        await sub.wait()

    assert [kind for kind, _ in rec.events] == ["diagnostics", "next", "complete"]
    err = rec.events[0][1]
    assert isinstance(err, ProviderEvaluationError)
    assert err.details["result_field"] == "boom"
    assert isinstance(err.__cause__, ValueError)
    result = rec.results[0]
    assert "boom" not in result
    assert result["block"]["block_num"] == 2
    assert any(r.getMessage() == "provider.failed" for r in caplog.records)


@pytest.mark.asyncio
async def test_required_provider_failure_errors_the_subscription():
    def boom(ctx):
        raise ValueError("node down")

    bee = WorkerBee(CountingChainSource(chain(1, 3)), fast_config())
    rec = Recorder()
    sub = bee.observe_past(1, 3).on_block_number(2).provide_custom("boom", boom, required=True).subscribe(rec)

    assert await sub.wait() is SubscriptionPhase.ERRORED
    assert [kind for kind, _ in rec.events] == ["error"]
    assert isinstance(rec.events[0][1], ProviderEvaluationError)
    assert sub.driver.ticks == 1


@pytest.mark.asyncio
async def test_failing_observer_errors_the_subscription():
    seen = []

    def on_next(result):
        seen.append(result.position)
        raise RuntimeError("observer bug")

    bee = WorkerBee(CountingChainSource(chain(1, 3)), fast_config())
    errors = []
    sub = bee.observe_past(1, 3).on_custom(always).subscribe({"next": on_next, "error": errors.append})

    assert await sub.wait() is SubscriptionPhase.ERRORED
    assert seen == [1]
    assert isinstance(errors[0], ObserverError)


@pytest.mark.asyncio
async def test_hybrid_hands_off_without_gaps_and_keeps_state():
    source = CountingChainSource(chain(1, 5))

    def remember(ctx) -> bool:
        ctx.state.access("seen", list).append((ctx.position, ctx.mode.value))
        return True

    rec = Recorder()
    async with WorkerBee(source, fast_config()) as bee:
        sub = bee.observe_past(1, 3).then_live().on_custom(remember).subscribe(rec)
        await wait_until(lambda: len(rec.results) >= 5)
        source.append(block(6))
        source.append(block(7))
        await wait_until(lambda: len(rec.results) >= 7)
        sub.unsubscribe()

    assert rec.positions == [1, 2, 3, 4, 5, 6, 7]
    assert [r.mode for r in rec.results] == [ObserveMode.PAST] * 3 + [ObserveMode.LIVE] * 4
    assert sub.state.access("seen", list) == [
        (1, "past"), (2, "past"), (3, "past"), (4, "live"), (5, "live"), (6, "live"), (7, "live"),
    ]
    assert sub.state.handoffs == [("past", "live", 4)]
    assert all(source.fetches[p] == 1 for p in range(1, 8))
    assert not [e for e in rec.events if e[0] in ("error", "complete")]


@pytest.mark.asyncio
async def test_relative_range_resolves_against_head():
    bee = WorkerBee(CountingChainSource(chain(980, 1000)), fast_config())
    rec = Recorder()

    assert await bee.observe_past("-30s").on_custom(always).subscribe(rec).wait() is SubscriptionPhase.COMPLETED
    assert rec.positions == list(range(991, 1001))


@pytest.mark.asyncio
async def test_shared_raw_cache_serves_concurrent_subscriptions():
    source = CountingChainSource(chain(1, 4, {3: [[post("alice")], [vote("bob")]]}))
    bee = WorkerBee(source, fast_config(raw_cache_size=16))
    posts, votes = Recorder(), Recorder()

    a = bee.observe_past(1, 4).on_posts("alice").subscribe(posts, name="posts")
    b = bee.observe_past(1, 4).on_votes("bob").subscribe(votes, name="votes")
    assert await a.wait() is SubscriptionPhase.COMPLETED
    assert await b.wait() is SubscriptionPhase.COMPLETED

    assert posts.positions == votes.positions == [3]
    assert all(source.fetches[p] == 1 for p in range(1, 5))
    assert [s.id for s in bee.subscriptions] == ["posts", "votes"]


@pytest.mark.asyncio
async def test_undeclared_collector_read_is_not_reported_as_configuration_error():
    async def reads_accounts(ctx) -> bool:
        return bool(await ctx.get("accounts"))

    bee = WorkerBee(CountingChainSource(chain(1, 3)), fast_config())
    rec = Recorder()
    sub = bee.observe_past(1, 3).on_custom(reads_accounts).subscribe(rec)

    assert await sub.wait() is SubscriptionPhase.ERRORED
    assert [kind for kind, _ in rec.events] == ["error"]
    err = rec.events[0][1]
    assert isinstance(err, CollectorError)
    assert not isinstance(err, ConfigurationError)
    assert err.kind == "collector"
    assert err.details["collector"] == "accounts"
    assert err.details["cause_kind"] == "configuration.mode_unavailable"
    assert isinstance(err.__cause__, ModeUnavailableError)


@pytest.mark.asyncio
async def test_or_keeps_the_deciding_field_and_and_keeps_both():
    events = {2: [[post("alice")]]}

    bee = WorkerBee(CountingChainSource(chain(1, 3, events)), fast_config())
    either, both = Recorder(), Recorder()
    await bee.observe_past(1, 3).on_transaction_ids("trx-2-0").on_posts("alice").subscribe(either).wait()
    await bee.observe_past(1, 3).on_transaction_ids("trx-2-0").and_.on_posts("alice").subscribe(both).wait()

    assert either.positions == both.positions == [2]
    assert "transactions" in either.results[0]
    assert set(either.results[0]) <= {"transactions", "posts"}
    assert set(both.results[0]) == {"transactions", "posts"}
    assert both.results[0]["posts"]["alice"][0]["trx_id"] == "trx-2-0"
