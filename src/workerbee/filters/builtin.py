"""
Built-in filter families.

Operation filters match normalized operations (see ingestion.chain.normalize)
and surface the matching operations grouped by the identifier they were
asked for. Account-state and feed-price filters are live-only: they need the
"accounts" / "feed_price" collectors and remember the last seen value in the
subscription state.
"""

from __future__ import annotations

import inspect
import json
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Mapping

from workerbee.exceptions.core import ConfigurationError
from workerbee.filters.base import FilterBase, names
from workerbee.utils.amount import Amount, parse_amount

_MENTION_RE = re.compile(r"(?<![\w/])@([a-z][a-z0-9\-.]{2,15})")

TRANSFER_TYPES = (
    "transfer",
    "transfer_to_vesting",
    "transfer_to_savings",
    "transfer_from_savings",
    "recurrent_transfer",
    "fill_recurrent_transfer",
)
NEW_ACCOUNT_TYPES = ("account_create", "account_create_with_delegation", "create_claimed_account")
MARKET_TYPES = ("limit_order_create", "limit_order_create2", "limit_order_cancel", "fill_order")

DEFAULT_EXCHANGES = (
    "bittrex",
    "binance-hot",
    "deepcrypto8",
    "huobi-pro",
    "gateiohive",
    "mxchive",
    "probithive",
    "upbit-exchange",
    "user.dunamu",
    "ionomy",
)

BALANCE_FIELDS = (
    "balance",
    "hbd_balance",
    "savings_balance",
    "savings_hbd_balance",
    "vesting_shares",
)
METADATA_FIELDS = ("json_metadata", "posting_json_metadata")


def _custom_json(op: Mapping[str, Any]) -> Any:
    raw = op["value"].get("json")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


async def _ops_of(ctx: Any, types: Iterable[str]) -> list[dict[str, Any]]:
    by_type = await ctx.get("operations_by_type")
    out: list[dict[str, Any]] = []
    for t in types:
        out.extend(by_type.get(t, ()))
    out.sort(key=lambda op: (op["trx_in_block"], op["op_in_trx"]))
    return out


def _group(pairs: Iterable[tuple[str, dict[str, Any]]]) -> dict[str, list[dict[str, Any]]]:
    grouped: dict[str, list[dict[str, Any]]] = {}
    for key, op in pairs:
        grouped.setdefault(key, []).append(op)
    return grouped


def _surface_if(ctx: Any, result_field: str, data: Any) -> bool:
    if not data:
        return False
    ctx.surface(result_field, data)
    return True


# ----------------------------------------------------------------------
# Block-based
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class BlockNumberFilter(FilterBase):
    number: int

    result_field = "block"
    requires = frozenset({"block_header"})

    def __post_init__(self):
        if isinstance(self.number, bool) or not isinstance(self.number, int) or self.number < 1:
            raise ConfigurationError(f"block number must be a positive int, got {self.number!r}")

    async def match(self, ctx) -> bool:
        header = await ctx.get("block_header")
        if header["block_num"] != self.number:
            return False
        ctx.surface(self.result_field, dict(header))
        return True


@dataclass(frozen=True)
class PostsFilter(FilterBase):
    """Root posts (comment operations without a parent author)."""

    authors: tuple[str, ...]

    result_field = "posts"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        ops = await _ops_of(ctx, ("comment",))
        hits = _group(
            (op["value"]["author"], op)
            for op in ops
            if not op["value"].get("parent_author") and op["value"].get("author") in self.authors
        )
        return _surface_if(ctx, self.result_field, hits)


@dataclass(frozen=True)
class CommentsFilter(FilterBase):
    """Replies (comment operations with a parent author)."""

    authors: tuple[str, ...]

    result_field = "comments"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        ops = await _ops_of(ctx, ("comment",))
        hits = _group(
            (op["value"]["author"], op)
            for op in ops
            if op["value"].get("parent_author") and op["value"].get("author") in self.authors
        )
        return _surface_if(ctx, self.result_field, hits)


@dataclass(frozen=True)
class VotesFilter(FilterBase):
    voters: tuple[str, ...]

    result_field = "votes"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        ops = await _ops_of(ctx, ("vote",))
        hits = _group((op["value"]["voter"], op) for op in ops if op["value"].get("voter") in self.voters)
        return _surface_if(ctx, self.result_field, hits)


def _follow_payload(op: Mapping[str, Any], kind: str) -> Mapping[str, Any] | None:
    if op["value"].get("id") not in ("follow", "reblog"):
        return None
    payload = _custom_json(op)
    if isinstance(payload, list) and len(payload) == 2 and payload[0] == kind and isinstance(payload[1], Mapping):
        return payload[1]
    return None


@dataclass(frozen=True)
class ReblogFilter(FilterBase):
    accounts: tuple[str, ...]

    result_field = "reblogs"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        pairs = []
        for op in await _ops_of(ctx, ("custom_json",)):
            body = _follow_payload(op, "reblog")
            if body is not None and body.get("account") in self.accounts:
                pairs.append((body["account"], {**op, "reblog": dict(body)}))
        return _surface_if(ctx, self.result_field, _group(pairs))


@dataclass(frozen=True)
class FollowFilter(FilterBase):
    """Follow, unfollow, mute and blacklist custom_json by the given followers."""

    accounts: tuple[str, ...]

    result_field = "follows"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        pairs = []
        for op in await _ops_of(ctx, ("custom_json",)):
            body = _follow_payload(op, "follow")
            if body is not None and body.get("follower") in self.accounts:
                pairs.append((body["follower"], {**op, "follow": dict(body)}))
        return _surface_if(ctx, self.result_field, _group(pairs))


@dataclass(frozen=True)
class MentionFilter(FilterBase):
    """Posts and comments whose body mentions one of the accounts."""

    accounts: tuple[str, ...]

    result_field = "mentioned"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        pairs = []
        for op in await _ops_of(ctx, ("comment",)):
            body = op["value"].get("body") or ""
            mentioned = {m.rstrip(".-") for m in _MENTION_RE.findall(body)}
            for account in self.accounts:
                if account in mentioned:
                    pairs.append((account, op))
        return _surface_if(ctx, self.result_field, _group(pairs))


@dataclass(frozen=True)
class CustomOperationFilter(FilterBase):
    """custom_json (and custom) operations by id."""

    ids: tuple[str, ...]

    result_field = "custom_operations"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        pairs = []
        for op in await _ops_of(ctx, ("custom_json", "custom")):
            op_id = op["value"].get("id")
            if str(op_id) in self.ids:
                pairs.append((str(op_id), {**op, "json": _custom_json(op)}))
        return _surface_if(ctx, self.result_field, _group(pairs))


@dataclass(frozen=True)
class TransactionIdsFilter(FilterBase):
    ids: tuple[str, ...]

    result_field = "transactions"
    requires = frozenset({"block"})

    async def match(self, ctx) -> bool:
        block = await ctx.get("block")
        hits = {
            trx["trx_id"]: trx
            for trx in block.get("transactions", [])
            if trx.get("trx_id") in self.ids
        }
        return _surface_if(ctx, self.result_field, hits)


@dataclass(frozen=True)
class ImpactedAccountsFilter(FilterBase):
    accounts: tuple[str, ...]

    result_field = "impacted"
    requires = frozenset({"impacted_accounts"})

    async def match(self, ctx) -> bool:
        impacted = await ctx.get("impacted_accounts")
        hits = {a: list(impacted[a]) for a in self.accounts if a in impacted}
        return _surface_if(ctx, self.result_field, hits)


def parse_threshold(raw: Any) -> Amount:
    try:
        amount = parse_amount(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid amount threshold {raw!r}: {exc}") from exc
    if amount.value <= 0:
        raise ConfigurationError(f"amount threshold must be positive, got {raw!r}")
    return amount


def _op_amount(op: Mapping[str, Any]) -> Amount | None:
    raw = op["value"].get("amount")
    if raw is None:
        return None
    try:
        return parse_amount(raw)
    except ValueError:
        return None


@dataclass(frozen=True)
class WhaleAlertFilter(FilterBase):
    """Transfers of at least `threshold` (same asset)."""

    threshold: Amount

    result_field = "whale_operations"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        hits = []
        for op in await _ops_of(ctx, TRANSFER_TYPES):
            amount = _op_amount(op)
            if amount is not None and amount.symbol == self.threshold.symbol and amount.value >= self.threshold.value:
                hits.append({**op, "amount": str(amount)})
        return _surface_if(ctx, self.result_field, hits)


@dataclass(frozen=True)
class ExchangeTransferFilter(FilterBase):
    """Transfers to or from known exchange accounts."""

    exchanges: tuple[str, ...] = DEFAULT_EXCHANGES

    result_field = "exchange_transfers"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        hits = []
        for op in await _ops_of(ctx, ("transfer", "transfer_to_vesting", "fill_recurrent_transfer", "recurrent_transfer")):
            value = op["value"]
            if value.get("from") in self.exchanges or value.get("to") in self.exchanges:
                hits.append(op)
        return _surface_if(ctx, self.result_field, hits)


@dataclass(frozen=True)
class NewAccountFilter(FilterBase):
    result_field = "new_accounts"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        hits = [
            {
                "account": op["value"].get("new_account_name"),
                "creator": op["value"].get("creator"),
                "operation": op,
            }
            for op in await _ops_of(ctx, NEW_ACCOUNT_TYPES)
        ]
        return _surface_if(ctx, self.result_field, hits)


@dataclass(frozen=True)
class InternalMarketFilter(FilterBase):
    """Order creation, cancellation and fills on the internal HIVE/HBD market."""

    accounts: tuple[str, ...]

    result_field = "internal_market"
    requires = frozenset({"operations_by_type"})

    async def match(self, ctx) -> bool:
        pairs = []
        for op in await _ops_of(ctx, MARKET_TYPES):
            value = op["value"]
            for key in ("owner", "current_owner", "open_owner"):
                if value.get(key) in self.accounts:
                    pairs.append((value[key], op))
                    break
        return _surface_if(ctx, self.result_field, _group(pairs))


# ----------------------------------------------------------------------
# Live-only, stateful
# ----------------------------------------------------------------------

def _pick(account: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    return {f: account.get(f) for f in fields}


@dataclass(frozen=True)
class _AccountsChangeFilter(FilterBase):
    accounts: tuple[str, ...]

    fields: tuple[str, ...] = ()
    requires = frozenset({"accounts"})

    def wants(self) -> Mapping[str, frozenset[str]]:
        return {"accounts": frozenset(self.accounts)}

    async def match(self, ctx) -> bool:
        found = await ctx.get("accounts")
        last = ctx.state.access(self.state_token())
        changes = {}
        for name in self.accounts:
            account = found.get(name)
            if account is None:
                continue
            current = _pick(account, self.fields)
            previous = last.get(name)
            last[name] = current
            # first sighting only records the baseline
            if previous is not None and previous != current:
                changes[name] = {"before": previous, "after": current}
        return _surface_if(ctx, self.result_field, changes)


@dataclass(frozen=True)
class AccountsBalanceChangeFilter(_AccountsChangeFilter):
    fields: tuple[str, ...] = BALANCE_FIELDS
    result_field = "balance_change"


@dataclass(frozen=True)
class AccountsMetadataChangeFilter(_AccountsChangeFilter):
    fields: tuple[str, ...] = METADATA_FIELDS
    result_field = "metadata_change"


@dataclass(frozen=True)
class FeedPriceChangeFilter(FilterBase):
    """Feed price moved by at least `percent` since the last reported price."""

    percent: float

    result_field = "feed_price"
    requires = frozenset({"feed_price"})

    def __post_init__(self):
        if not self.percent > 0:
            raise ConfigurationError(f"feed price change percent must be > 0, got {self.percent!r}")

    async def match(self, ctx) -> bool:
        feed = await ctx.get("feed_price")
        last = ctx.state.access(self.state_token())
        price = Decimal(str(feed["price"]))
        reference = last.get("price")
        if reference is None:
            last["price"] = price
            return False
        change = abs(price - reference) / reference * 100 if reference else Decimal("Infinity")
        if change < Decimal(str(self.percent)):
            return False
        last["price"] = price
        ctx.surface(self.result_field, {**feed, "previous_price": float(reference), "change_percent": float(change)})
        return True


@dataclass(frozen=True)
class FeedPriceNoChangeFilter(FilterBase):
    """Feed price unchanged for at least `hours` of block time; fires once per streak."""

    hours: float

    result_field = "feed_price"
    requires = frozenset({"feed_price"})

    def __post_init__(self):
        if not self.hours > 0:
            raise ConfigurationError(f"feed price no-change hours must be > 0, got {self.hours!r}")

    async def match(self, ctx) -> bool:
        feed = await ctx.get("feed_price")
        last = ctx.state.access(self.state_token())
        now = ctx.tick.timestamp
        if last.get("price") != feed["price"]:
            last.update(price=feed["price"], since=now, fired=False)
            return False
        if last["fired"] or now - last["since"] < self.hours * 3_600_000:
            return False
        last["fired"] = True
        ctx.surface(self.result_field, {**feed, "unchanged_since": last["since"]})
        return True


# ----------------------------------------------------------------------
# Escape hatch
# ----------------------------------------------------------------------

Predicate = Callable[[Any], "Awaitable[bool] | bool"]


@dataclass(frozen=True)
class CustomFilter(FilterBase):
    """
    User predicate `fn(ctx) -> bool` (sync or async).

    `requires` names the collectors `fn` reads so they are checked against
    the observe mode when the subscription is built.
    """

    fn: Predicate
    requires: frozenset[str] = frozenset()
    param_wants: Mapping[str, frozenset[str]] = field(default_factory=dict, compare=False, hash=False)
    result_field = "custom"

    def __post_init__(self):
        if not callable(self.fn):
            raise ConfigurationError(f"custom filter needs a callable, got {self.fn!r}")

    def wants(self) -> Mapping[str, frozenset[str]]:
        return self.param_wants

    async def match(self, ctx) -> bool:
        out = self.fn(ctx)
        if inspect.isawaitable(out):
            out = await out
        return bool(out)


def account_names(values: Iterable[Any]) -> tuple[str, ...]:
    return names(values, what="account name")
