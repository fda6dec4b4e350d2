from __future__ import annotations

import asyncio
from typing import Any

from workerbee.exceptions.core import PredicateEvaluationError, WorkerBeeError
from workerbee.filters.base import And, Atomic, Node, Or


def _retrieve(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


async def evaluate(node: Node, ctx: Any) -> bool:
    """
    Evaluate a condition tree against one tick's context.

    AND / OR evaluate both sides concurrently. As soon as one side decides
    the outcome (False for AND, True for OR) the other side is cancelled and
    the result returns without waiting for it.
    """
    if isinstance(node, Atomic):
        return await _atomic(node, ctx)
    if isinstance(node, And):
        return await _race(node, ctx, decisive=False)
    if isinstance(node, Or):
        return await _race(node, ctx, decisive=True)
    raise TypeError(f"not a condition node: {node!r}")


async def _atomic(node: Atomic, ctx: Any) -> bool:
    try:
        matched = await node.predicate.match(ctx)
    except (asyncio.CancelledError, WorkerBeeError):
        raise
    except Exception as exc:
        raise PredicateEvaluationError(
            f"predicate {node.predicate!r} failed: {exc}",
            predicate=type(node.predicate).__name__,
            position=getattr(ctx, "position", None),
        ) from exc
    return bool(matched)


async def _race(node: And | Or, ctx: Any, *, decisive: bool) -> bool:
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = {
        loop.create_task(evaluate(node.left, ctx)),
        loop.create_task(evaluate(node.right, ctx)),
    }
    for task in pending:
        task.add_done_callback(_retrieve)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            failed = None
            for task in done:
                if task.exception() is not None:
                    failed = task
                elif task.result() is decisive:
                    return decisive
            if failed is not None:
                failed.result()
        return not decisive
    finally:
        # best effort; abandoned branches are not awaited
        for task in pending:
            task.cancel()
