"""
GENERIC STATE MACHINE UTILITY

A small transition table for entity and coordinator states:
- Transition registration
- Transition validation
- Invalid transition rejection

Usage:
    payment_machine = StateMachine("payment")
    payment_machine.register("pending", "completed")

    new_state = payment_machine.transition("pending", "completed")
"""

from typing import Dict, List, Set, Tuple
import logging

from .errors import CommissionError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class InvalidTransitionError(CommissionError):
    """Raised when attempting an invalid state transition."""
    error_type = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message, {
            "entity": entity,
            "from_state": from_state,
            "to_state": to_state,
            "allowed": self.allowed
        })


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Registered-transition state machine.

    Example:
        machine = StateMachine("sync")
        machine.register("idle", "syncing")
        machine.validate_transition("idle", "syncing")
    """

    def __init__(self, entity_name: str):
        self.entity_name = entity_name

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], str] = {}
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state: str, to_state: str, description: str = "") -> "StateMachine":
        """
        Register a state transition.

        Returns:
            self (for chaining)
        """
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = description
        self._states.add(from_state)
        self._states.add(to_state)
        return self

    @property
    def states(self) -> Set[str]:
        return set(self._states)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """
        Validate that a transition is registered.
        Raises InvalidTransitionError if not valid.
        """
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    def transition(self, from_state: str, to_state: str) -> str:
        """Validate and return the new state."""
        self.validate_transition(from_state, to_state)
        logger.debug(f"[STATE_MACHINE] {self.entity_name}: '{from_state}' -> '{to_state}'")
        return to_state


# =============================================================================
# MACHINE DEFINITIONS
# =============================================================================

def build_sync_state_machine() -> StateMachine:
    """idle -> syncing -> {success, error} -> idle"""
    machine = StateMachine("sync")
    machine.register("idle", "syncing", "Sync run started")
    machine.register("syncing", "success", "Push completed without transport failure")
    machine.register("syncing", "error", "Backend unreachable or push failed")
    machine.register("success", "idle", "Run settled")
    machine.register("error", "idle", "Run settled")
    return machine


def build_payment_state_machine() -> StateMachine:
    machine = StateMachine("payment")
    machine.register("pending", "completed", "Payment fully distributed")
    return machine


def build_contract_state_machine() -> StateMachine:
    machine = StateMachine("contract")
    machine.register("active", "completed", "Contract finished")
    machine.register("active", "cancelled", "Contract cancelled")
    machine.register("completed", "active", "Contract reopened")
    machine.register("cancelled", "active", "Contract reinstated")
    return machine
