from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from workerbee.collectors.registry import CollectorRegistry, CollectorSpec
from workerbee.exceptions.core import (
    ConfigurationError,
    CyclicDependencyError,
    ModeUnavailableError,
    UnknownCollectorError,
)
from workerbee.runtime.modes import ObserveMode
from workerbee.utils.logger import get_logger, log_debug

_GREY, _BLACK = 1, 2


@dataclass(frozen=True)
class ResolutionPlan:
    """
    Execution plan for a set of requested collector keys.

    order     : executed collector keys, dependencies first, no duplicates
    served_by : requested (and depended-upon) key -> executed collector key
    """

    order: tuple[str, ...]
    served_by: Mapping[str, str]


class DependencyResolver:
    """
    Pure planning over a CollectorRegistry for one observe mode.

    Overriding collectors usable in the mode are preferred wherever any key
    they override is requested. Plans are cached per requested key set.
    """

    def __init__(self, registry: CollectorRegistry, *, mode: ObserveMode):
        self.registry = registry
        self.mode = mode
        self._logger = get_logger(f"workerbee.collectors.{self.__class__.__name__}")
        self._cache: dict[frozenset[str], ResolutionPlan] = {}
        self._overrides: list[CollectorSpec] = []
        self._overrides = self._usable_overrides()

    def resolve(self, keys: Iterable[str]) -> list[str]:
        return list(self.plan(keys).order)

    def plan(self, keys: Iterable[str]) -> ResolutionPlan:
        requested = frozenset(keys)
        cached = self._cache.get(requested)
        if cached is not None:
            return cached
        plan = self._build(requested)
        self._cache[requested] = plan
        return plan

    # -------------------------------------------------
    # Internals
    # -------------------------------------------------

    def _usable_overrides(self) -> list[CollectorSpec]:
        usable: list[CollectorSpec] = []
        for spec in self.registry.overriding():
            if not spec.available_in(self.mode):
                continue
            try:
                self._build(frozenset({spec.key}))
            except ConfigurationError as exc:
                log_debug(
                    self._logger,
                    "collectors.override_skipped",
                    collector=spec.key,
                    mode=self.mode.value,
                    err=str(exc),
                )
                continue
            usable.append(spec)
        return usable

    def _executor(self, key: str, *, required_by: str | None) -> str:
        for spec in self._overrides:
            if key in spec.overrides:
                return spec.key
        if key not in self.registry:
            raise UnknownCollectorError(key, required_by=required_by)
        if not self.registry.get(key).available_in(self.mode):
            raise ModeUnavailableError(key, self.mode.value)
        return key

    def _build(self, requested: frozenset[str]) -> ResolutionPlan:
        order: list[str] = []
        served_by: dict[str, str] = {}
        state: dict[str, int] = {}
        stack: list[str] = []

        def visit_key(key: str, required_by: str | None) -> None:
            executor = self._executor(key, required_by=required_by)
            served_by.setdefault(key, executor)
            visit_executor(executor)

        def visit_executor(key: str) -> None:
            mark = state.get(key)
            if mark == _BLACK:
                return
            if mark == _GREY:
                raise CyclicDependencyError(stack[stack.index(key):] + [key])
            state[key] = _GREY
            stack.append(key)
            spec = self.registry.get(key)
            for dep in spec.depends_on:
                visit_key(dep, key)
            stack.pop()
            state[key] = _BLACK
            order.append(key)

        for key in sorted(requested):
            visit_key(key, None)

        return ResolutionPlan(order=tuple(order), served_by=dict(served_by))
