"""
Dispute State Transition Validator
==================================

Prevents invalid dispute status changes. RESOLVED and CLOSED are terminal, and
re-entering the current state counts as an invalid transition.
"""

import logging
from typing import Dict, Optional, Set, Tuple, Union

from models import DisputeStatus
from services.settlement_errors import InvalidStateError

logger = logging.getLogger(__name__)


class StateTransitionError(InvalidStateError):
    """Raised when an invalid state transition is attempted"""
    pass


class DisputeStateValidator:
    """
    Validates dispute state transitions.

    OPEN -> IN_PROGRESS -> RESOLVED
    OPEN -> RESOLVED | CLOSED
    IN_PROGRESS -> CLOSED
    """

    VALID_TRANSITIONS: Dict[DisputeStatus, Set[DisputeStatus]] = {
        DisputeStatus.OPEN: {
            DisputeStatus.IN_PROGRESS,
            DisputeStatus.RESOLVED,
            DisputeStatus.CLOSED,
        },
        DisputeStatus.IN_PROGRESS: {
            DisputeStatus.RESOLVED,
            DisputeStatus.CLOSED,
        },
        # Terminal
        DisputeStatus.RESOLVED: set(),
        DisputeStatus.CLOSED: set(),
    }

    TERMINAL_STATES: Set[DisputeStatus] = {
        DisputeStatus.RESOLVED,
        DisputeStatus.CLOSED,
    }

    ACTIVE_STATES: Set[DisputeStatus] = {
        DisputeStatus.OPEN,
        DisputeStatus.IN_PROGRESS,
    }

    @staticmethod
    def _coerce(status: Union[str, DisputeStatus]) -> DisputeStatus:
        return status if isinstance(status, DisputeStatus) else DisputeStatus(status)

    @classmethod
    def is_terminal(cls, status: Union[str, DisputeStatus]) -> bool:
        return cls._coerce(status) in cls.TERMINAL_STATES

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, DisputeStatus],
        to_status: Union[str, DisputeStatus],
        dispute_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        from_enum = cls._coerce(from_status)
        to_enum = cls._coerce(to_status)
        dispute_ref = f"Dispute {dispute_id}" if dispute_id else "Dispute"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_enum, set())

        if to_enum in valid_next_states:
            logger.info(f"✅ VALID_TRANSITION: {dispute_ref} {from_enum.value} -> {to_enum.value}")
            return True, "Valid state transition"

        if from_enum in cls.TERMINAL_STATES:
            error_msg = f"Cannot transition dispute from terminal state {from_enum.value}"
        else:
            error_msg = (
                f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
                f"Valid transitions from {from_enum.value}: "
                f"{sorted(s.value for s in valid_next_states)}"
            )

        logger.warning(f"❌ INVALID_TRANSITION: {dispute_ref} {from_enum.value} -> {to_enum.value}")
        return False, error_msg

    @classmethod
    def assert_transition(
        cls,
        from_status: Union[str, DisputeStatus],
        to_status: Union[str, DisputeStatus],
        dispute_id: Optional[int] = None,
    ) -> None:
        """Raise StateTransitionError unless the transition is allowed"""
        is_valid, reason = cls.validate_transition(from_status, to_status, dispute_id)
        if not is_valid:
            raise StateTransitionError(reason)
