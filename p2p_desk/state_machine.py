"""
Trade Desk - Operation State Machine.

============================================================
PURPOSE
============================================================
Declares every legal status change of a trade offer.

STATE MACHINE:

    PENDING ──accept──► ACCEPTED ──request──► PENDING_COMPLETION
      │  ▲                 │  │                     │
      │  └────revert───────┘  └──complete──┐        │ complete
      │                                     ▼        ▼
      ├──close──► CLOSED                   COMPLETED
      │
      └──cancel / expire──► CANCELLED ◄──cancel── ACCEPTED,
                                                  PENDING_COMPLETION

INVARIANTS:
- Terminal states are final
- Each action names the exact set of pre-states it accepts
- The same table drives the conditional UPDATE guard

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Tuple, Any

from .types import OperationStatus, utcnow


# ============================================================
# ACTIONS
# ============================================================

class OperationAction(Enum):
    ACCEPT = "accept"
    REQUEST_COMPLETION = "request_completion"
    COMPLETE = "complete"
    REVERT = "revert"
    CANCEL = "cancel"
    CLOSE = "close"
    EXPIRE = "expire"


@dataclass(frozen=True)
class ActionRule:
    """Pre-states an action accepts and the status it produces."""

    from_states: FrozenSet[OperationStatus]
    to_state: OperationStatus


ACTION_RULES: Dict[OperationAction, ActionRule] = {
    OperationAction.ACCEPT: ActionRule(
        frozenset({OperationStatus.PENDING}),
        OperationStatus.ACCEPTED,
    ),
    OperationAction.REQUEST_COMPLETION: ActionRule(
        frozenset({OperationStatus.ACCEPTED}),
        OperationStatus.PENDING_COMPLETION,
    ),
    OperationAction.COMPLETE: ActionRule(
        frozenset({OperationStatus.ACCEPTED, OperationStatus.PENDING_COMPLETION}),
        OperationStatus.COMPLETED,
    ),
    OperationAction.REVERT: ActionRule(
        frozenset({OperationStatus.ACCEPTED}),
        OperationStatus.PENDING,
    ),
    OperationAction.CANCEL: ActionRule(
        frozenset({
            OperationStatus.PENDING,
            OperationStatus.ACCEPTED,
            OperationStatus.PENDING_COMPLETION,
        }),
        OperationStatus.CANCELLED,
    ),
    OperationAction.CLOSE: ActionRule(
        frozenset({OperationStatus.PENDING}),
        OperationStatus.CLOSED,
    ),
    OperationAction.EXPIRE: ActionRule(
        frozenset({OperationStatus.PENDING}),
        OperationStatus.CANCELLED,
    ),
}


# ============================================================
# STATE TRANSITION RULES
# ============================================================

def _build_transitions() -> Dict[OperationStatus, Set[OperationStatus]]:
    transitions: Dict[OperationStatus, Set[OperationStatus]] = {
        status: set() for status in OperationStatus
    }
    for rule in ACTION_RULES.values():
        for from_state in rule.from_states:
            transitions[from_state].add(rule.to_state)
    return transitions


# Valid transitions from each state
VALID_TRANSITIONS: Dict[OperationStatus, Set[OperationStatus]] = _build_transitions()


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a committed transition."""

    operation_id: str
    from_state: OperationStatus
    to_state: OperationStatus
    action: OperationAction
    actor_id: Optional[int] = None
    """None for system actions (expiry)."""

    timestamp: datetime = field(default_factory=utcnow)
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for state transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_state: OperationStatus,
        to_state: OperationStatus,
    ) -> Tuple[bool, str]:
        """
        Check if an edge exists.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal:
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    @staticmethod
    def can_apply(
        action: OperationAction,
        current: OperationStatus,
    ) -> Tuple[bool, str]:
        """Check whether an action is legal from the current status."""
        rule = ACTION_RULES[action]
        if current in rule.from_states:
            return True, "Valid transition"
        expected = ", ".join(sorted(s.value for s in rule.from_states))
        return False, (
            f"Cannot {action.value} from {current.value} (expected one of: {expected})"
        )


def expected_states(action: OperationAction) -> FrozenSet[OperationStatus]:
    return ACTION_RULES[action].from_states


def target_state(action: OperationAction) -> OperationStatus:
    return ACTION_RULES[action].to_state
