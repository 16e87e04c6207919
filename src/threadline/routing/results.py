"""Result and state types shared by the strategies and the orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from threadline.models import DecisionMethod


class StrategyKind(enum.StrEnum):
    """The closed set of routing strategies, in priority order."""

    IDENTITY = "identity"
    METADATA = "metadata"
    CONTEXT = "context"


class RoutingState(enum.Enum):
    """Progress of one routing attempt.

    NOT_STARTED → IDENTITY_ATTEMPTED → METADATA_ATTEMPTED → CONTEXT_ATTEMPTED,
    ending in RESOLVED or UNRESOLVED. A match short-circuits straight to
    RESOLVED.
    """

    NOT_STARTED = "not_started"
    IDENTITY_ATTEMPTED = "identity_attempted"
    METADATA_ATTEMPTED = "metadata_attempted"
    CONTEXT_ATTEMPTED = "context_attempted"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"

    @property
    def is_terminal(self) -> bool:
        return self in (RoutingState.RESOLVED, RoutingState.UNRESOLVED)

    @classmethod
    def attempted(cls, kind: StrategyKind) -> RoutingState:
        return _ATTEMPTED_STATES[kind]


_ATTEMPTED_STATES = {
    StrategyKind.IDENTITY: RoutingState.IDENTITY_ATTEMPTED,
    StrategyKind.METADATA: RoutingState.METADATA_ATTEMPTED,
    StrategyKind.CONTEXT: RoutingState.CONTEXT_ATTEMPTED,
}


@dataclass(frozen=True)
class RoutingResult:
    """A thread chosen for a message, with the evidence behind it."""

    thread_id: str
    confidence: float
    method: DecisionMethod
    reason: str

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")


@dataclass
class RoutingTrail:
    """Mutable record of one attempt's state transitions."""

    state: RoutingState = RoutingState.NOT_STARTED
    transitions: list[RoutingState] = field(default_factory=list)
    skipped: list[StrategyKind] = field(default_factory=list)
    errored: list[StrategyKind] = field(default_factory=list)

    def advance(self, state: RoutingState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Routing attempt already finished in state {self.state.name}")
        self.state = state
        self.transitions.append(state)


__all__ = ["RoutingResult", "RoutingState", "RoutingTrail", "StrategyKind"]
