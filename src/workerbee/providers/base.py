from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Hashable, Iterable, Mapping

from workerbee.exceptions.core import ConfigurationError


def _as_tuple(value: Any) -> tuple[Any, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        value = (value,)
    return tuple(dict.fromkeys(value))


class ProviderBase(ABC):
    """
    Post-match enrichment step.

    Options are ordered, de-duplicated tuples per option key. Declarations
    with the same `merge_key` squash into one invocation whose options are the
    ordered union per key; `required` is OR-ed.

    A provider never influences whether a tick matched. Its output lands in
    the result under `result_field`.
    """

    result_field: str = ""
    requires: frozenset[str] = frozenset()

    def __init__(self, *, required: bool = False, **options: Any):
        self.required = bool(required)
        self.options: dict[str, tuple[Any, ...]] = {k: _as_tuple(v) for k, v in options.items()}

    @property
    def merge_key(self) -> Hashable:
        return type(self)

    def merge(self, other: "ProviderBase") -> "ProviderBase":
        if other.merge_key != self.merge_key:
            raise ConfigurationError(f"cannot squash {other!r} into {self!r}")
        keys = dict.fromkeys([*self.options, *other.options])
        merged = {k: self.options.get(k, ()) + other.options.get(k, ()) for k in keys}
        return type(self)(required=self.required or other.required, **merged)

    def wants(self) -> Mapping[str, frozenset[str]]:
        return {}

    @abstractmethod
    async def provide(self, ctx: Any) -> Any:
        raise NotImplementedError

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProviderBase):
            return NotImplemented
        return (
            self.merge_key == other.merge_key
            and self.required == other.required
            and self.options == other.options
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        opts = ", ".join(f"{k}={list(v)!r}" for k, v in self.options.items())
        req = ", required=True" if self.required else ""
        return f"{type(self).__name__}({opts}{req})"


def squash(providers: Iterable[ProviderBase]) -> list[ProviderBase]:
    """
    Merge declarations sharing a merge key, keeping first-declaration order.

    Squashing ignores where in the AND/OR chain a provider was declared.
    """
    merged: dict[Hashable, ProviderBase] = {}
    for provider in providers:
        key = provider.merge_key
        merged[key] = merged[key].merge(provider) if key in merged else provider
    return list(merged.values())
