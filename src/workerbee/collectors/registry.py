"""
Collector registry.

This module provides:
- the CollectorSpec declaration (key, dependencies, overrides, modes)
- a CollectorRegistry instance type with a decorator for registration
- whole-graph validation (unknown dependencies, cycles)

Registries are plain objects passed to the engine; nothing here is global.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Iterator

from workerbee.exceptions.core import ConfigurationError, CyclicDependencyError, UnknownCollectorError
from workerbee.runtime.modes import ObserveMode

CollectorFn = Callable[[Any], "Awaitable[Any] | Any"]

ALL_MODES = frozenset({ObserveMode.LIVE, ObserveMode.PAST})
LIVE_ONLY = frozenset({ObserveMode.LIVE})


@dataclass(frozen=True)
class CollectorSpec:
    key: str
    fn: CollectorFn
    depends_on: tuple[str, ...] = ()
    overrides: frozenset[str] = frozenset()
    modes: frozenset[ObserveMode] = ALL_MODES
    doc: str = field(default="", compare=False)

    def available_in(self, mode: ObserveMode) -> bool:
        return mode.phases() <= self.modes

    @property
    def is_overriding(self) -> bool:
        return bool(self.overrides)


class CollectorRegistry:
    def __init__(self, specs: Iterable[CollectorSpec] = ()):
        self._specs: dict[str, CollectorSpec] = {}
        for spec in specs:
            self.add(spec)

    # -------------------------------------------------
    # Registration
    # -------------------------------------------------

    def add(self, spec: CollectorSpec, *, overwrite: bool = False) -> CollectorSpec:
        if not isinstance(spec.key, str) or not spec.key:
            raise ConfigurationError("collector key must be a non-empty string")
        if spec.key in self._specs and not overwrite:
            raise ConfigurationError(
                f"collector {spec.key!r} already registered. Pass overwrite=True to replace."
            )
        if spec.key in spec.overrides:
            raise ConfigurationError(f"collector {spec.key!r} cannot override itself")
        if spec.overrides & set(spec.depends_on):
            raise ConfigurationError(
                f"collector {spec.key!r} cannot depend on keys it overrides: "
                f"{sorted(spec.overrides & set(spec.depends_on))}"
            )
        self._specs[spec.key] = spec
        return spec

    def register(
        self,
        key: str,
        fn: CollectorFn,
        *,
        depends_on: Iterable[str] = (),
        overrides: Iterable[str] = (),
        modes: Iterable[ObserveMode] = ALL_MODES,
        overwrite: bool = False,
    ) -> CollectorSpec:
        spec = CollectorSpec(
            key=key,
            fn=fn,
            depends_on=tuple(depends_on),
            overrides=frozenset(overrides),
            modes=frozenset(modes),
            doc=(getattr(fn, "__doc__", None) or "").strip(),
        )
        return self.add(spec, overwrite=overwrite)

    def collector(self, key: str, **kwargs: Any):
        """
        Decorator: @registry.collector("accounts", depends_on=("block",))
        """
        def decorator(fn: CollectorFn) -> CollectorFn:
            self.register(key, fn, **kwargs)
            return fn
        return decorator

    # -------------------------------------------------
    # Lookup
    # -------------------------------------------------

    def __contains__(self, key: object) -> bool:
        return key in self._specs

    def __iter__(self) -> Iterator[CollectorSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def get(self, key: str) -> CollectorSpec:
        try:
            return self._specs[key]
        except KeyError:
            raise UnknownCollectorError(key) from None

    def keys(self) -> list[str]:
        return list(self._specs)

    def overriding(self) -> list[CollectorSpec]:
        return [s for s in self._specs.values() if s.is_overriding]

    def copy(self) -> "CollectorRegistry":
        return CollectorRegistry(self._specs.values())

    # -------------------------------------------------
    # Validation
    # -------------------------------------------------

    def validate(self) -> None:
        """Reject unknown dependencies and dependency cycles in the whole graph."""
        for spec in self._specs.values():
            for dep in spec.depends_on:
                if dep not in self._specs:
                    raise UnknownCollectorError(dep, required_by=spec.key)

        WHITE, GREY, BLACK = 0, 1, 2
        color = {k: WHITE for k in self._specs}
        path: list[str] = []

        def visit(key: str) -> None:
            color[key] = GREY
            path.append(key)
            for dep in self._specs[key].depends_on:
                if color[dep] == GREY:
                    raise CyclicDependencyError(path[path.index(dep):] + [dep])
                if color[dep] == WHITE:
                    visit(dep)
            path.pop()
            color[key] = BLACK

        for key in self._specs:
            if color[key] == WHITE:
                visit(key)
