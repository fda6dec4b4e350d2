from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from ingestion.contracts.tick import ChainTick
from workerbee.collectors.resolver import DependencyResolver
from workerbee.exceptions.core import ConfigurationError
from workerbee.filters.base import And, Atomic, FilterBase, Or, fold, names
from workerbee.filters.builtin import (
    DEFAULT_EXCHANGES,
    AccountsBalanceChangeFilter,
    AccountsMetadataChangeFilter,
    BlockNumberFilter,
    CommentsFilter,
    CustomFilter,
    CustomOperationFilter,
    ExchangeTransferFilter,
    FeedPriceChangeFilter,
    FeedPriceNoChangeFilter,
    FollowFilter,
    ImpactedAccountsFilter,
    InternalMarketFilter,
    MentionFilter,
    NewAccountFilter,
    PostsFilter,
    ReblogFilter,
    TransactionIdsFilter,
    VotesFilter,
    WhaleAlertFilter,
    account_names,
    parse_threshold,
)
from workerbee.providers.base import ProviderBase, squash
from workerbee.providers.builtin import (
    AccountsProvider,
    BlockDataProvider,
    BlockHeaderProvider,
    CustomProvider,
    FeedPriceProvider,
    RcAccountsProvider,
    WitnessesProvider,
)
from workerbee.runtime.modes import ObserveSpec
from workerbee.runtime.plan import ObservationPlan
from workerbee.runtime.subscription import Subscription

if TYPE_CHECKING:
    from workerbee.bee import WorkerBee


def _union_wants(declared: Iterable[Mapping[str, frozenset[str]]]) -> dict[str, frozenset[str]]:
    out: dict[str, set[str]] = {}
    for wants in declared:
        for key, params in wants.items():
            out.setdefault(key, set()).update(params)
    return {k: frozenset(v) for k, v in out.items()}


class QueenBee:
    """
    Fluent subscription builder.

        bee.observe_past(1, 100) \\
            .on_posts("alice").on_posts("bob") \\
            .and_ \\
            .on_votes("carol") \\
            .provide_accounts("alice") \\
            .subscribe(observer)

    Consecutive filters form an OR group; `and_` closes the group, so the
    tree above is (posts(alice) OR posts(bob)) AND votes(carol). `or_` is an
    explicit no-op join. Providers are independent of the grouping.

    OR branches are raced: once one branch matches, the others are cancelled,
    so a result carries the fields of the branches that finished first. A
    filter whose field must always be present belongs in its own `and_`
    group, or its data should come from a provider.
    """

    def __init__(self, bee: "WorkerBee", observe: ObserveSpec):
        self._bee = bee
        self._observe = observe
        self._groups: list[list[Atomic]] = [[]]
        self._providers: list[ProviderBase] = []

    # -------------------------------------------------
    # Joins and mode
    # -------------------------------------------------

    @property
    def and_(self) -> "QueenBee":
        if not self._groups[-1]:
            raise ConfigurationError("'and_' must follow a condition")
        self._groups.append([])
        return self

    @property
    def or_(self) -> "QueenBee":
        if not self._groups[-1]:
            raise ConfigurationError("'or_' must follow a condition")
        return self

    def then_live(self) -> "QueenBee":
        """Continue with live observation once the historical range is replayed."""
        try:
            self._observe = self._observe.with_live_tail()
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        return self

    def filter(self, predicate: FilterBase) -> "QueenBee":
        if not isinstance(predicate, FilterBase):
            raise ConfigurationError(f"not a filter: {predicate!r}")
        self._groups[-1].append(Atomic(predicate))
        return self

    def provide(self, provider: ProviderBase) -> "QueenBee":
        if not isinstance(provider, ProviderBase):
            raise ConfigurationError(f"not a provider: {provider!r}")
        self._providers.append(provider)
        return self

    # -------------------------------------------------
    # Filters
    # -------------------------------------------------

    def on_block_number(self, number: int) -> "QueenBee":
        return self.filter(BlockNumberFilter(number))

    def on_posts(self, *authors: str) -> "QueenBee":
        return self.filter(PostsFilter(account_names(authors)))

    def on_comments(self, *authors: str) -> "QueenBee":
        return self.filter(CommentsFilter(account_names(authors)))

    def on_votes(self, *voters: str) -> "QueenBee":
        return self.filter(VotesFilter(account_names(voters)))

    def on_reblog(self, *accounts: str) -> "QueenBee":
        return self.filter(ReblogFilter(account_names(accounts)))

    def on_follow(self, *accounts: str) -> "QueenBee":
        return self.filter(FollowFilter(account_names(accounts)))

    def on_mention(self, *accounts: str) -> "QueenBee":
        return self.filter(MentionFilter(account_names(accounts)))

    def on_custom_operation(self, *ids: str) -> "QueenBee":
        return self.filter(CustomOperationFilter(names(ids, what="operation id")))

    def on_transaction_ids(self, *ids: str) -> "QueenBee":
        return self.filter(TransactionIdsFilter(names(ids, what="transaction id")))

    def on_impacted_accounts(self, *accounts: str) -> "QueenBee":
        return self.filter(ImpactedAccountsFilter(account_names(accounts)))

    def on_whale_alert(self, amount: Any) -> "QueenBee":
        """Transfers of at least `amount`, e.g. "10000.000 HIVE" or a NAI dict."""
        return self.filter(WhaleAlertFilter(parse_threshold(amount)))

    def on_exchange_transfer(self, *exchanges: str) -> "QueenBee":
        return self.filter(ExchangeTransferFilter(account_names(exchanges or DEFAULT_EXCHANGES)))

    def on_new_account(self) -> "QueenBee":
        return self.filter(NewAccountFilter())

    def on_internal_market_operation(self, *accounts: str) -> "QueenBee":
        return self.filter(InternalMarketFilter(account_names(accounts)))

    def on_accounts_balance_change(self, *accounts: str) -> "QueenBee":
        return self.filter(AccountsBalanceChangeFilter(account_names(accounts)))

    def on_accounts_metadata_change(self, *accounts: str) -> "QueenBee":
        return self.filter(AccountsMetadataChangeFilter(account_names(accounts)))

    def on_feed_price_change(self, percent: float) -> "QueenBee":
        return self.filter(FeedPriceChangeFilter(float(percent)))

    def on_feed_price_no_change(self, hours: float = 24.0) -> "QueenBee":
        return self.filter(FeedPriceNoChangeFilter(float(hours)))

    def on_custom(
        self,
        fn: Callable[[Any], Any],
        *,
        requires: Iterable[str] = (),
        wants: Mapping[str, Iterable[str]] | None = None,
    ) -> "QueenBee":
        """Escape hatch: `fn(ctx) -> bool`, reading the collectors named in `requires`."""
        params = {k: frozenset(v) for k, v in (wants or {}).items()}
        return self.filter(CustomFilter(fn, frozenset(requires), params))

    # -------------------------------------------------
    # Providers
    # -------------------------------------------------

    def provide_accounts(self, *accounts: str, required: bool = False) -> "QueenBee":
        return self.provide(AccountsProvider(accounts=accounts, required=required))

    def provide_rc_accounts(self, *accounts: str, required: bool = False) -> "QueenBee":
        return self.provide(RcAccountsProvider(accounts=accounts, required=required))

    def provide_witnesses(self, *witnesses: str, required: bool = False) -> "QueenBee":
        return self.provide(WitnessesProvider(witnesses=witnesses, required=required))

    def provide_block_header_data(self, *, required: bool = False) -> "QueenBee":
        return self.provide(BlockHeaderProvider(required=required))

    def provide_block_data(self, *, required: bool = False) -> "QueenBee":
        return self.provide(BlockDataProvider(required=required))

    def provide_feed_price_data(self, *, required: bool = False) -> "QueenBee":
        return self.provide(FeedPriceProvider(required=required))

    def provide_custom(
        self,
        result_field: str,
        fn: Callable[[Any], Any],
        *,
        requires: Iterable[str] = (),
        required: bool = False,
    ) -> "QueenBee":
        return self.provide(CustomProvider(result_field, fn, requires=requires, required=required))

    # -------------------------------------------------
    # Build
    # -------------------------------------------------

    def build(self) -> ObservationPlan:
        """
        Freeze the declarations into an ObservationPlan.

        Every collector a filter or provider needs is resolved for the
        observe mode here, so an incompatible filter fails now rather than
        while ticks are processed.
        """
        if not self._groups[-1]:
            if len(self._groups) == 1:
                raise ConfigurationError("a subscription needs at least one filter")
            raise ConfigurationError("'and_' must be followed by a condition")

        condition = fold((fold(group, Or) for group in self._groups), And)
        providers = tuple(squash(self._providers))

        resolver = DependencyResolver(self._bee.registry, mode=self._observe.mode)
        for atomic in (a for group in self._groups for a in group):
            resolver.plan(atomic.requires)
        for provider in providers:
            resolver.plan(provider.requires)

        wants = _union_wants(
            [a.predicate.wants() for group in self._groups for a in group]
            + [p.wants() for p in providers]
        )
        return ObservationPlan(
            condition=condition,
            providers=providers,
            wants=wants,
            observe=self._observe,
        )

    def subscribe(
        self,
        observer: Any,
        *,
        on_progress: Callable[[ChainTick, bool], Any] | None = None,
        name: str | None = None,
    ) -> Subscription:
        """Build, validate and start. Must be called with a running event loop."""
        plan = self.build()
        subscription = Subscription(
            plan=plan,
            source=self._bee.source,
            registry=self._bee.registry,
            config=self._bee.config,
            observer=observer,
            on_progress=on_progress,
            name=name,
        )
        self._bee.track(subscription)
        return subscription.start()
