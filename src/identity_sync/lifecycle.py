"""Integration lifecycle state machine.

Create walks PROVISIONING -> REPLICATING -> BINDING -> KEYED -> ACTIVE.
Teardown walks TEARING_DOWN -> DELETED and may start from any live state,
including a partially created one.

The last state entered is persisted in the record, so a create that fails
midway resumes from that state on the next invocation instead of starting
over. Every step is idempotent, which is what makes re-entry safe.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class IntegrationState(str, Enum):
    """Named reconciliation states."""

    PROVISIONING = "provisioning"
    REPLICATING = "replicating"
    BINDING = "binding"
    KEYED = "keyed"
    ACTIVE = "active"
    TEARING_DOWN = "tearing_down"
    DELETED = "deleted"


class InvalidTransitionError(Exception):
    """Raised when a state transition is not allowed."""

    pass


# Ordered create path; index order is the resumption order
CREATE_SEQUENCE: tuple[IntegrationState, ...] = (
    IntegrationState.PROVISIONING,
    IntegrationState.REPLICATING,
    IntegrationState.BINDING,
    IntegrationState.KEYED,
    IntegrationState.ACTIVE,
)

ALLOWED_TRANSITIONS: dict[IntegrationState, frozenset[IntegrationState]] = {
    IntegrationState.PROVISIONING: frozenset(
        {IntegrationState.REPLICATING, IntegrationState.TEARING_DOWN}
    ),
    IntegrationState.REPLICATING: frozenset(
        {IntegrationState.BINDING, IntegrationState.TEARING_DOWN}
    ),
    IntegrationState.BINDING: frozenset({IntegrationState.KEYED, IntegrationState.TEARING_DOWN}),
    IntegrationState.KEYED: frozenset({IntegrationState.ACTIVE, IntegrationState.TEARING_DOWN}),
    IntegrationState.ACTIVE: frozenset({IntegrationState.TEARING_DOWN}),
    IntegrationState.TEARING_DOWN: frozenset({IntegrationState.DELETED}),
    IntegrationState.DELETED: frozenset(),
}


def next_create_state(state: IntegrationState) -> IntegrationState:
    """State entered after the create step for `state` completes."""
    index = CREATE_SEQUENCE.index(state)
    if index + 1 >= len(CREATE_SEQUENCE):
        raise InvalidTransitionError(f"No create step follows {state.value}")
    return CREATE_SEQUENCE[index + 1]


class IntegrationLifecycle:
    """Tracks the current state and enforces allowed transitions."""

    def __init__(self, state: IntegrationState = IntegrationState.PROVISIONING) -> None:
        self._state = state
        self._history: list[IntegrationState] = [state]

    @property
    def state(self) -> IntegrationState:
        return self._state

    @property
    def history(self) -> list[IntegrationState]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state == IntegrationState.DELETED

    def can_advance(self, target: IntegrationState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def advance(self, target: IntegrationState) -> None:
        """Move to the target state.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if not self.can_advance(target):
            raise InvalidTransitionError(
                f"Cannot transition from {self._state.value} to {target.value}"
            )
        logger.debug(
            "Lifecycle transition",
            extra={"from_state": self._state.value, "to_state": target.value},
        )
        self._state = target
        self._history.append(target)

    def remaining_create_steps(self) -> list[IntegrationState]:
        """Create steps still to run, starting with the current state.

        Raises:
            InvalidTransitionError: If the lifecycle is not on the create path.
        """
        if self._state not in CREATE_SEQUENCE:
            raise InvalidTransitionError(
                f"Cannot resume create from state {self._state.value}"
            )
        index = CREATE_SEQUENCE.index(self._state)
        return [s for s in CREATE_SEQUENCE[index:] if s != IntegrationState.ACTIVE]
