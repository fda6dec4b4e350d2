from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from workerbee.filters.base import Node, describe
from workerbee.providers.base import ProviderBase
from workerbee.runtime.modes import ObserveSpec


@dataclass(frozen=True)
class ObservationPlan:
    """
    Immutable output of the builder.

    condition : AND-of-OR-groups condition tree
    providers : squashed provider declarations, in first-declaration order
    wants     : collector key -> parameter set (e.g. "accounts" -> names)
    observe   : how ticks are produced
    """

    condition: Node
    providers: tuple[ProviderBase, ...]
    wants: Mapping[str, frozenset[str]]
    observe: ObserveSpec

    def describe(self) -> str:
        return describe(self.condition)
