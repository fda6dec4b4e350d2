from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Union

from workerbee.exceptions.core import ConfigurationError


class FilterBase(ABC):
    """
    Atomic predicate over one tick.

    Contract:
      - `requires` lists the collector keys `match()` reads through `ctx.get`.
      - `wants()` names parameters of parameterized collectors (account
        names for "accounts", ...); the subscription unions them.
      - `match()` returns a bool and, when it matched, records its data with
        `ctx.surface(result_field, data)`.
      - Stateful filters keep "last value seen" in `ctx.state`, never on self.
    """

    result_field: str = ""
    requires: frozenset[str] = frozenset()

    def wants(self) -> Mapping[str, frozenset[str]]:
        return {}

    @abstractmethod
    async def match(self, ctx: Any) -> bool:
        raise NotImplementedError

    def state_token(self) -> tuple[str, int]:
        return (type(self).__name__, id(self))


@dataclass(frozen=True)
class Atomic:
    predicate: FilterBase

    @property
    def requires(self) -> frozenset[str]:
        return frozenset(self.predicate.requires)


@dataclass(frozen=True)
class And:
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Or:
    left: "Node"
    right: "Node"


Node = Union[Atomic, And, Or]


def atomics(node: Node) -> Iterator[Atomic]:
    if isinstance(node, Atomic):
        yield node
    elif isinstance(node, (And, Or)):
        yield from atomics(node.left)
        yield from atomics(node.right)
    else:
        raise TypeError(f"not a condition node: {node!r}")


def fold(nodes: Iterable[Node], combinator: type[And] | type[Or]) -> Node:
    """Left-fold nodes with `combinator`: [a, b, c] -> C(C(a, b), c)."""
    it = iter(nodes)
    try:
        out = next(it)
    except StopIteration:
        raise ConfigurationError(f"cannot build {combinator.__name__} over no conditions") from None
    for node in it:
        out = combinator(out, node)
    return out


def describe(node: Node) -> str:
    if isinstance(node, Atomic):
        return repr(node.predicate)
    if isinstance(node, And):
        return f"({describe(node.left)} AND {describe(node.right)})"
    if isinstance(node, Or):
        return f"({describe(node.left)} OR {describe(node.right)})"
    raise TypeError(f"not a condition node: {node!r}")


def names(values: Iterable[Any], *, what: str) -> tuple[str, ...]:
    """Validated, order-preserving, de-duplicated identifier list."""
    out = tuple(dict.fromkeys(values))
    if not out:
        raise ConfigurationError(f"at least one {what} is required")
    for v in out:
        if not isinstance(v, str) or not v:
            raise ConfigurationError(f"{what} must be a non-empty string, got {v!r}")
    return out
