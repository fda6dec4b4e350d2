from __future__ import annotations

from enum import Enum


class SubscriptionPhase(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL = frozenset({SubscriptionPhase.COMPLETED, SubscriptionPhase.ERRORED, SubscriptionPhase.CANCELLED})

_ALLOWED = {
    SubscriptionPhase.IDLE: frozenset({SubscriptionPhase.RUNNING, SubscriptionPhase.CANCELLED}),
    SubscriptionPhase.RUNNING: TERMINAL,
}


class LifecycleGuard:
    """
    Enforces IDLE -> RUNNING -> {COMPLETED | ERRORED | CANCELLED}.

    Terminal phases are final; any further transition is a bug.
    """

    def __init__(self) -> None:
        self.phase = SubscriptionPhase.IDLE

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL

    def enter(self, phase: SubscriptionPhase) -> None:
        if phase not in _ALLOWED.get(self.phase, frozenset()):
            raise RuntimeError(f"illegal subscription transition {self.phase.value} -> {phase.value}")
        self.phase = phase
