from __future__ import annotations

import asyncio
import logging

import pytest

from tests.helpers.fake_chain import CountingChainSource, tick
from workerbee.collectors.builtin import default_registry
from workerbee.collectors.resolver import DependencyResolver
from workerbee.context.dec import EvaluationContext
from workerbee.exceptions.core import ConfigurationError, ProviderEvaluationError
from workerbee.providers.base import squash
from workerbee.providers.builtin import (
    AccountsProvider,
    BlockDataProvider,
    BlockHeaderProvider,
    CustomProvider,
    RcAccountsProvider,
)
from workerbee.providers.engine import run_providers
from workerbee.runtime.modes import ObserveMode


def _ctx(**kwargs) -> EvaluationContext:
    return EvaluationContext(
        tick(10),
        resolver=DependencyResolver(default_registry(), mode=ObserveMode.PAST),
        source=CountingChainSource(),
        **kwargs,
    )


def test_squash_unions_options_in_declaration_order():
    squashed = squash(
        [
            AccountsProvider(accounts=["a"]),
            BlockHeaderProvider(),
            AccountsProvider(accounts=["b", "a"]),
            AccountsProvider(accounts=["c"], required=True),
        ]
    )
    assert [type(p) for p in squashed] == [AccountsProvider, BlockHeaderProvider]
    accounts = squashed[0]
    assert accounts.options == {"accounts": ("a", "b", "c")}
    assert accounts.required is True
    assert accounts.wants() == {"accounts": frozenset({"a", "b", "c"})}


def test_squash_keeps_distinct_types_and_custom_providers_apart():
    c1 = CustomProvider("x", lambda ctx: 1)
    c2 = CustomProvider("x", lambda ctx: 2)
    squashed = squash([AccountsProvider(accounts=["a"]), RcAccountsProvider(accounts=["a"]), c1, c2])
    assert len(squashed) == 4
    assert squashed[2] is c1 and squashed[3] is c2


def test_provider_declarations_are_validated():
    with pytest.raises(ConfigurationError):
        AccountsProvider(accounts=[])
    with pytest.raises(ConfigurationError):
        AccountsProvider(accounts=["a"], manabar=["rc"])
    with pytest.raises(ConfigurationError):
        CustomProvider("", lambda ctx: None)
    with pytest.raises(ConfigurationError):
        CustomProvider("field", "not callable")


@pytest.mark.asyncio
async def test_run_providers_merges_fields():
    async def slow(ctx):
        await asyncio.sleep(0.01)
        return {"n": ctx.position}

    outcome = await run_providers(
        squash([BlockHeaderProvider(), BlockDataProvider(), CustomProvider("extra", slow)]),
        _ctx(),
    )
    assert outcome.errors == []
    assert outcome.fields["block"]["block_num"] == 10
    assert outcome.fields["block"]["transactions"] == []
    assert outcome.fields["extra"] == {"n": 10}


@pytest.mark.asyncio
async def test_failing_provider_is_isolated(caplog):
    def broken(ctx):
        raise RuntimeError("nope")

    with caplog.at_level(logging.WARNING):
        outcome = await run_providers([CustomProvider("bad", broken), BlockHeaderProvider()], _ctx())

    assert "bad" not in outcome.fields
    assert outcome.fields["block"]["block_num"] == 10
    assert len(outcome.errors) == 1
    err = outcome.errors[0]
    assert isinstance(err, ProviderEvaluationError)
    assert err.details["result_field"] == "bad"
    assert any(r.getMessage() == "provider.failed" for r in caplog.records)


@pytest.mark.asyncio
async def test_required_provider_failure_escalates():
    def broken(ctx):
        raise RuntimeError("nope")

    with pytest.raises(ProviderEvaluationError):
        await run_providers([CustomProvider("bad", broken, required=True), BlockHeaderProvider()], _ctx())


@pytest.mark.asyncio
async def test_live_only_provider_needs_live_collector():
    # In past mode the "accounts" collector is unavailable; the resolver refuses it.
    ctx = _ctx(wants={"accounts": {"a"}})
    outcome = await run_providers([AccountsProvider(accounts=["a"])], ctx)
    assert outcome.fields == {}
    assert outcome.errors[0].details["provider"] == "AccountsProvider"
