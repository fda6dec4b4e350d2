from __future__ import annotations

from typing import Any


class WorkerBeeError(Exception):
    """Base error. `kind` is the stable category observers branch on."""

    kind: str = "workerbee"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **self.details}


class ConfigurationError(WorkerBeeError):
    """Rejected setup. Raised while building, never while processing ticks."""

    kind = "configuration"


class CyclicDependencyError(ConfigurationError):
    kind = "configuration.cyclic_dependency"

    def __init__(self, cycle: list[str]):
        super().__init__(f"collector dependency cycle: {' -> '.join(cycle)}", cycle=list(cycle))
        self.cycle = list(cycle)


class UnknownCollectorError(ConfigurationError):
    kind = "configuration.unknown_collector"

    def __init__(self, key: str, *, required_by: str | None = None):
        msg = f"unknown collector {key!r}"
        if required_by is not None:
            msg += f" (required by {required_by!r})"
        super().__init__(msg, key=key, required_by=required_by)
        self.key = key


class ModeUnavailableError(ConfigurationError):
    """A collector is registered but cannot produce data in the selected mode."""

    kind = "configuration.mode_unavailable"

    def __init__(self, key: str, mode: str):
        super().__init__(f"collector {key!r} is not available in {mode!r} mode", key=key, mode=mode)
        self.key = key
        self.mode = mode


class TransientFetchError(WorkerBeeError):
    """Transient or retryable failure; handled by the retry policy."""

    kind = "fetch.transient"


class FatalFetchError(WorkerBeeError):
    """Non-recoverable data-layer failure; terminates the subscription."""

    kind = "fetch.fatal"


class CollectorError(WorkerBeeError):
    kind = "collector"


class PredicateEvaluationError(WorkerBeeError):
    kind = "predicate"


class ProviderEvaluationError(WorkerBeeError):
    kind = "provider"


class ObserverError(WorkerBeeError):
    """An observer callback raised while a result was being delivered."""

    kind = "observer"
