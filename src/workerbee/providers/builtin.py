from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Hashable, Iterable, Mapping

from workerbee.exceptions.core import ConfigurationError
from workerbee.filters.base import names
from workerbee.providers.base import ProviderBase


class _NamedProvider(ProviderBase):
    """Provider keyed by a list of names, served by a parameterized collector."""

    option: str = ""
    collector: str = ""

    def __init__(self, *, required: bool = False, **options: Any):
        super().__init__(required=required, **options)
        names(self.options.get(self.option, ()), what=f"{self.option} entry")
        unknown = set(self.options) - {self.option}
        if unknown:
            raise ConfigurationError(f"{type(self).__name__}: unknown options {sorted(unknown)}")

    @property
    def requires(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset({self.collector})

    def wants(self) -> Mapping[str, frozenset[str]]:
        return {self.collector: frozenset(self.options[self.option])}

    async def provide(self, ctx) -> dict[str, Any]:
        found = await ctx.get(self.collector)
        return {n: found[n] for n in self.options[self.option] if n in found}


class AccountsProvider(_NamedProvider):
    result_field = "accounts"
    option = "accounts"
    collector = "accounts"


class RcAccountsProvider(_NamedProvider):
    result_field = "rc_accounts"
    option = "accounts"
    collector = "rc_accounts"


class WitnessesProvider(_NamedProvider):
    result_field = "witnesses"
    option = "witnesses"
    collector = "witnesses"


class BlockHeaderProvider(ProviderBase):
    result_field = "block"
    requires = frozenset({"block_header"})

    async def provide(self, ctx) -> dict[str, Any]:
        return dict(await ctx.get("block_header"))


class BlockDataProvider(ProviderBase):
    """Header plus transactions of the matched block."""

    result_field = "block"
    requires = frozenset({"block"})

    async def provide(self, ctx) -> dict[str, Any]:
        return dict(await ctx.get("block"))


class FeedPriceProvider(ProviderBase):
    result_field = "feed_price"
    requires = frozenset({"feed_price"})

    async def provide(self, ctx) -> dict[str, Any]:
        return dict(await ctx.get("feed_price"))


ProvideFn = Callable[[Any], "Awaitable[Any] | Any"]


class CustomProvider(ProviderBase):
    """User enrichment `fn(ctx) -> data` (sync or async). Never squashed."""

    def __init__(
        self,
        result_field: str,
        fn: ProvideFn,
        *,
        requires: Iterable[str] = (),
        required: bool = False,
    ):
        super().__init__(required=required)
        if not isinstance(result_field, str) or not result_field:
            raise ConfigurationError("custom provider needs a non-empty result field name")
        if not callable(fn):
            raise ConfigurationError(f"custom provider needs a callable, got {fn!r}")
        self.result_field = result_field
        self.fn = fn
        self.requires = frozenset(requires)

    @property
    def merge_key(self) -> Hashable:
        return ("custom", id(self))

    async def provide(self, ctx) -> Any:
        out = self.fn(ctx)
        if inspect.isawaitable(out):
            out = await out
        return out

    def __repr__(self) -> str:
        return f"CustomProvider({self.result_field!r}, {getattr(self.fn, '__name__', self.fn)!r})"
