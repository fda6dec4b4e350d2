from __future__ import annotations

from typing import Any, Callable, Hashable, Iterator, TypeVar, overload

T = TypeVar("T")


class TaggedStore:
    """
    Key-value slots keyed by a classifier token.

    A slot is default-constructed on first access: a class token builds an
    instance of itself, any other token builds a dict unless a factory is
    given. Slots are shared by identity; their contents are owned by the
    callers, the store does no synchronization.
    """

    def __init__(self) -> None:
        self._slots: dict[Hashable, Any] = {}

    @overload
    def access(self, token: type[T], factory: None = None) -> T: ...

    @overload
    def access(self, token: Hashable, factory: Callable[[], T]) -> T: ...

    @overload
    def access(self, token: Hashable, factory: None = None) -> Any: ...

    def access(self, token, factory=None):
        if token in self._slots:
            return self._slots[token]
        if factory is None:
            factory = token if isinstance(token, type) else dict
        slot = factory()
        self._slots[token] = slot
        return slot

    def __contains__(self, token: object) -> bool:
        return token in self._slots

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._slots)

    def __len__(self) -> int:
        return len(self._slots)

    def clear(self) -> None:
        self._slots.clear()


class SubscriptionState(TaggedStore):
    """
    Per-subscription store that outlives ticks.

    Holds "last value seen" style state for stateful filters. It is carried
    over explicitly when a historical replay hands off to live observation.
    """

    def __init__(self) -> None:
        super().__init__()
        self.phase: str | None = None
        self.handoffs: list[tuple[str, str, int]] = []

    def carry_over(self, *, to_phase: str, at_position: int) -> "SubscriptionState":
        self.handoffs.append((self.phase or "", to_phase, int(at_position)))
        self.phase = to_phase
        return self
