from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator

from workerbee.runtime.modes import ObserveMode

SCHEMA_VERSION = 1


def merge_field(existing: Any, incoming: Any) -> Any:
    """
    Merge two values of one result field.

    Mappings merge per key (recursively); lists concatenate without
    duplicates; anything else is replaced by the incoming value.
    """
    if isinstance(existing, Mapping) and isinstance(incoming, Mapping):
        out = dict(existing)
        for k, v in incoming.items():
            out[k] = merge_field(out[k], v) if k in out else v
        return out
    if isinstance(existing, list) and isinstance(incoming, list):
        out_list = list(existing)
        out_list.extend(v for v in incoming if v not in existing)
        return out_list
    return incoming


def merge_fields(target: Dict[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    for name, value in incoming.items():
        target[name] = merge_field(target[name], value) if name in target else value
    return target


@dataclass(frozen=True)
class ObservationResult(Mapping):
    """
    Immutable result of one matched tick.

    Mapping access goes to `data`: one entry per semantic field ("posts",
    "accounts", ...) produced by a matched filter or a provider that ran.
    Fields of filters that did not match or providers that failed are absent.
    """

    position: int
    timestamp: int  # epoch ms
    mode: ObserveMode
    data: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Any:
        return self.data[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    @property
    def block_num(self) -> int:
        return self.position

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "position": int(self.position),
            "timestamp": int(self.timestamp),
            "mode": self.mode.value,
            "data": dict(self.data),
        }
