from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import pytest

from tests.helpers.fake_chain import CountingChainSource, tick
from workerbee.collectors.builtin import default_registry
from workerbee.collectors.resolver import DependencyResolver
from workerbee.context.dec import EvaluationContext
from workerbee.exceptions.core import CollectorError, PredicateEvaluationError
from workerbee.filters.base import And, Atomic, FilterBase, Or, atomics, fold
from workerbee.filters.engine import evaluate
from workerbee.runtime.modes import ObserveMode


@dataclass(frozen=True, eq=False)
class Const(FilterBase):
    value: bool
    delay: float = 0.0

    async def match(self, ctx) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.value


@dataclass(frozen=True, eq=False)
class Slow(FilterBase):
    """Counts progress; a full run reaches `steps`."""

    result: bool
    steps: int = 10
    progress: list = field(default_factory=list)

    async def match(self, ctx) -> bool:
        for i in range(self.steps):
            await asyncio.sleep(0.05)
            self.progress.append(i)
        return self.result


@dataclass(frozen=True, eq=False)
class Boom(FilterBase):
    async def match(self, ctx) -> bool:
        raise KeyError("missing")


def _ctx() -> EvaluationContext:
    resolver = DependencyResolver(default_registry(), mode=ObserveMode.PAST)
    return EvaluationContext(tick(1), resolver=resolver, source=CountingChainSource())


@pytest.mark.asyncio
async def test_and_short_circuits_on_false_without_waiting():
    slow = Slow(result=True)
    t0 = time.perf_counter()
    out = await evaluate(And(Atomic(Const(False)), Atomic(slow)), _ctx())
    elapsed = time.perf_counter() - t0

    assert out is False
    assert elapsed < 0.25
    await asyncio.sleep(0.1)
    assert len(slow.progress) < slow.steps


@pytest.mark.asyncio
async def test_or_short_circuits_on_true_without_waiting():
    slow = Slow(result=False)
    t0 = time.perf_counter()
    out = await evaluate(Or(Atomic(slow), Atomic(Const(True, delay=0.01))), _ctx())

    assert out is True
    assert time.perf_counter() - t0 < 0.25
    await asyncio.sleep(0.1)
    assert len(slow.progress) < slow.steps


@pytest.mark.asyncio
async def test_and_or_full_truth_table():
    ctx = _ctx()
    for left in (True, False):
        for right in (True, False):
            a, b = Atomic(Const(left)), Atomic(Const(right, delay=0.001))
            assert await evaluate(And(a, b), ctx) is (left and right)
            assert await evaluate(Or(a, b), ctx) is (left or right)


@pytest.mark.asyncio
async def test_nested_tree_waits_for_undecided_side():
    tree = And(Or(Atomic(Const(False)), Atomic(Const(True, delay=0.02))), Atomic(Const(True)))
    assert await evaluate(tree, _ctx()) is True


@pytest.mark.asyncio
async def test_predicate_exception_becomes_predicate_error():
    with pytest.raises(PredicateEvaluationError) as ei:
        await evaluate(Or(Atomic(Const(False)), Atomic(Boom())), _ctx())
    assert ei.value.kind == "predicate"
    assert isinstance(ei.value.__cause__, KeyError)


@pytest.mark.asyncio
async def test_decided_outcome_wins_over_late_failure():
    tree = Or(Atomic(Const(True)), Atomic(Boom()))
    assert await evaluate(tree, _ctx()) is True


@dataclass(frozen=True, eq=False)
class NeedsCollector(FilterBase):
    requires = frozenset({"broken"})

    async def match(self, ctx) -> bool:
        return await ctx.get("broken")


@pytest.mark.asyncio
async def test_collector_failure_propagates_unwrapped():
    reg = default_registry()

    @reg.collector("broken")
    def broken(ctx):
        raise RuntimeError("upstream")

    ctx = EvaluationContext(
        tick(1),
        resolver=DependencyResolver(reg, mode=ObserveMode.PAST),
        source=CountingChainSource(),
    )
    with pytest.raises(CollectorError):
        await evaluate(Atomic(NeedsCollector()), ctx)


def test_fold_and_atomics():
    a, b, c = (Atomic(Const(v)) for v in (True, False, True))
    tree = fold([fold([a, b], Or), c], And)
    assert tree == And(Or(a, b), c)
    assert list(atomics(tree)) == [a, b, c]
