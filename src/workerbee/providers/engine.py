from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from logging import Logger
from typing import Any, Sequence

from workerbee.exceptions.core import ProviderEvaluationError
from workerbee.providers.base import ProviderBase
from workerbee.runtime.result import merge_fields
from workerbee.utils.logger import get_logger, log_provider


@dataclass
class ProviderOutcome:
    fields: dict[str, Any] = field(default_factory=dict)
    errors: list[ProviderEvaluationError] = field(default_factory=list)


async def _run_one(provider: ProviderBase, ctx: Any) -> Any:
    try:
        return await provider.provide(ctx)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        raise ProviderEvaluationError(
            f"provider {provider!r} failed: {exc}",
            provider=type(provider).__name__,
            result_field=provider.result_field,
            position=getattr(ctx, "position", None),
            required=provider.required,
        ) from exc


async def run_providers(
    providers: Sequence[ProviderBase],
    ctx: Any,
    *,
    logger: Logger | None = None,
) -> ProviderOutcome:
    """
    Run squashed providers concurrently against one matched tick.

    A failing provider is isolated: its field is left out, the error is
    logged and returned in `errors`. A failing `required` provider raises
    its ProviderEvaluationError once every sibling has settled.
    """
    logger = logger or get_logger("workerbee.providers")
    outcome = ProviderOutcome()
    if not providers:
        return outcome

    results = await asyncio.gather(*(_run_one(p, ctx) for p in providers), return_exceptions=True)

    escalate: ProviderEvaluationError | None = None
    for provider, result in zip(providers, results):
        if isinstance(result, ProviderEvaluationError):
            cause = result.__cause__
            log_provider(
                logger,
                "provider.failed",
                provider=type(provider).__name__,
                result_field=provider.result_field,
                position=getattr(ctx, "position", None),
                required=provider.required,
                err_type=type(cause).__name__ if cause is not None else type(result).__name__,
                err=str(cause if cause is not None else result),
            )
            outcome.errors.append(result)
            if provider.required and escalate is None:
                escalate = result
            continue
        if isinstance(result, BaseException):
            raise result
        merge_fields(outcome.fields, {provider.result_field: result})

    if escalate is not None:
        raise escalate
    return outcome
