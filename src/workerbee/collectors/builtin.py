"""
Built-in collectors.

Block-based collectors read the tick payload and work in every mode.
Collectors that need current chain state go through `ctx.query()` and are
live-only: a historical replay cannot ask the node what an account looked
like at an old block.

Declarations are collected at import time; `default_registry()` copies them
into a fresh CollectorRegistry per engine.
"""

from __future__ import annotations

from typing import Any, Mapping

from workerbee.collectors.registry import ALL_MODES, LIVE_ONLY, CollectorRegistry, CollectorSpec
from workerbee.utils.amount import parse_amount

_BUILTIN: list[CollectorSpec] = []

# Operation value fields naming an account the operation touches.
_ACCOUNT_FIELDS = (
    "account",
    "author",
    "voter",
    "from",
    "to",
    "creator",
    "new_account_name",
    "owner",
    "delegator",
    "delegatee",
    "producer",
    "publisher",
    "receiver",
    "curator",
    "comment_author",
    "agent",
    "who",
    "from_account",
    "to_account",
    "witness",
    "parent_author",
)
_AUTH_FIELDS = ("required_auths", "required_posting_auths")


def builtin_collector(
    key: str,
    *,
    depends_on: tuple[str, ...] = (),
    overrides: frozenset[str] = frozenset(),
    modes: frozenset = ALL_MODES,
):
    """
    Decorator: @builtin_collector("operations", depends_on=("block",))
    """
    def decorator(fn):
        _BUILTIN.append(
            CollectorSpec(
                key=key,
                fn=fn,
                depends_on=tuple(depends_on),
                overrides=frozenset(overrides),
                modes=frozenset(modes),
                doc=(fn.__doc__ or "").strip(),
            )
        )
        return fn
    return decorator


def default_registry() -> CollectorRegistry:
    """Fresh registry holding every built-in collector."""
    return CollectorRegistry(_BUILTIN)


# ----------------------------------------------------------------------
# Block-based
# ----------------------------------------------------------------------

@builtin_collector("block")
def collect_block(ctx) -> Mapping[str, Any]:
    """Normalized unit of the current tick."""
    return ctx.tick.payload


@builtin_collector("block_header", depends_on=("block",))
async def collect_block_header(ctx) -> dict[str, Any]:
    block = await ctx.get("block")
    return {
        "block_num": block["block_num"],
        "block_id": block.get("block_id"),
        "previous": block.get("previous"),
        "timestamp": block["timestamp"],
        "witness": block.get("witness"),
    }


@builtin_collector("operations", depends_on=("block",))
async def collect_operations(ctx) -> list[dict[str, Any]]:
    """Flat list of the block's operations with their location attached."""
    block = await ctx.get("block")
    out: list[dict[str, Any]] = []
    for trx in block.get("transactions", []):
        for op_in_trx, op in enumerate(trx.get("operations", [])):
            out.append(
                {
                    "type": op["type"],
                    "value": op["value"],
                    "block_num": block["block_num"],
                    "timestamp": block["timestamp"],
                    "trx_id": trx.get("trx_id"),
                    "trx_in_block": trx.get("trx_in_block"),
                    "op_in_trx": op_in_trx,
                }
            )
    return out


@builtin_collector("operations_by_type", depends_on=("operations",))
async def collect_operations_by_type(ctx) -> dict[str, list[dict[str, Any]]]:
    by_type: dict[str, list[dict[str, Any]]] = {}
    for op in await ctx.get("operations"):
        by_type.setdefault(op["type"], []).append(op)
    return by_type


def operation_accounts(value: Mapping[str, Any]) -> set[str]:
    names: set[str] = set()
    for field in _ACCOUNT_FIELDS:
        v = value.get(field)
        if isinstance(v, str) and v:
            names.add(v)
    for field in _AUTH_FIELDS:
        for v in value.get(field) or ():
            if isinstance(v, str) and v:
                names.add(v)
    return names


@builtin_collector("impacted_accounts", depends_on=("operations",))
async def collect_impacted_accounts(ctx) -> dict[str, list[dict[str, Any]]]:
    """Account name -> operations of this block touching it."""
    impacted: dict[str, list[dict[str, Any]]] = {}
    for op in await ctx.get("operations"):
        for name in sorted(operation_accounts(op["value"])):
            impacted.setdefault(name, []).append(op)
    return impacted


# ----------------------------------------------------------------------
# Current chain state (live-only)
# ----------------------------------------------------------------------

def _by_name(result: Any, list_key: str, name_key: str) -> dict[str, Any]:
    items = result.get(list_key, []) if isinstance(result, Mapping) else result or []
    return {item[name_key]: item for item in items}


@builtin_collector("accounts", modes=LIVE_ONLY)
async def collect_accounts(ctx) -> dict[str, Any]:
    """Accounts named by the subscription (filters and providers)."""
    names = sorted(ctx.wants("accounts"))
    if not names:
        return {}
    result = await ctx.query("database_api.find_accounts", {"accounts": names})
    return _by_name(result, "accounts", "name")


@builtin_collector("rc_accounts", modes=LIVE_ONLY)
async def collect_rc_accounts(ctx) -> dict[str, Any]:
    names = sorted(ctx.wants("rc_accounts"))
    if not names:
        return {}
    result = await ctx.query("rc_api.find_rc_accounts", {"accounts": names})
    return _by_name(result, "rc_accounts", "account")


@builtin_collector("witnesses", modes=LIVE_ONLY)
async def collect_witnesses(ctx) -> dict[str, Any]:
    owners = sorted(ctx.wants("witnesses"))
    if not owners:
        return {}
    result = await ctx.query("database_api.find_witnesses", {"owners": owners})
    return _by_name(result, "witnesses", "owner")


def _feed_price(feed: Mapping[str, Any]) -> dict[str, Any]:
    base = parse_amount(feed["base"])
    quote = parse_amount(feed["quote"])
    if quote.value == 0:
        raise ValueError("feed price quote is zero")
    return {
        "base": str(base),
        "quote": str(quote),
        "price": float(base.value / quote.value),
    }


@builtin_collector("dynamic_global_properties", modes=LIVE_ONLY)
async def collect_dynamic_global_properties(ctx) -> dict[str, Any]:
    return dict(await ctx.query("database_api.get_dynamic_global_properties", {}))


@builtin_collector("feed_price", modes=LIVE_ONLY)
async def collect_feed_price(ctx) -> dict[str, Any]:
    """Current median feed price (HBD per HIVE)."""
    return _feed_price(await ctx.query("database_api.get_current_price_feed", {}))


@builtin_collector(
    "chain_state",
    overrides=frozenset({"dynamic_global_properties", "feed_price"}),
    modes=LIVE_ONLY,
)
async def collect_chain_state(ctx) -> dict[str, Any]:
    """Global properties and feed price in one batched round trip."""
    props, feed = await ctx.query_batch(
        [
            ("database_api.get_dynamic_global_properties", {}),
            ("database_api.get_current_price_feed", {}),
        ]
    )
    return {
        "dynamic_global_properties": dict(props),
        "feed_price": _feed_price(feed),
    }
