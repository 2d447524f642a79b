#!/usr/bin/env python3
"""
Escrow Transaction State Machine
Single transition table for every status change a transaction can make
"""

import logging
from typing import Dict, Optional, Set

from models import TransactionStatus
from utils.escrow_errors import InvalidTransition

logger = logging.getLogger(__name__)


# Timestamp column stamped when a status is entered
TIMESTAMP_FIELDS: Dict[str, Optional[str]] = {
    TransactionStatus.PENDING.value: None,  # created_at is set on insert
    TransactionStatus.ACCEPTED.value: "accepted_at",
    TransactionStatus.COMPLETED.value: "completed_at",
    TransactionStatus.CANCELLED.value: "cancelled_at",
}


class EscrowStateValidator:
    """Validates transaction state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {TransactionStatus.PENDING.value},
        TransactionStatus.PENDING.value: {
            TransactionStatus.ACCEPTED.value,
            TransactionStatus.CANCELLED.value,
        },
        TransactionStatus.ACCEPTED.value: {
            TransactionStatus.COMPLETED.value,
            TransactionStatus.CANCELLED.value,
        },
        # Terminal states (no transitions allowed)
        TransactionStatus.COMPLETED.value: set(),
        TransactionStatus.CANCELLED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """Check if state transition is valid"""
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return status in cls.VALID_TRANSITIONS and len(cls.VALID_TRANSITIONS[status]) == 0

    @classmethod
    def require_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        """
        Guard a status change.

        Returns True when the change must be applied and False when the
        transaction already sits in the requested terminal status (duplicate
        trigger, e.g. a sweep racing a manual cancel). Raises InvalidTransition
        for anything else.
        """
        if current_status == new_status and cls.is_terminal_state(new_status):
            logger.info(f"Transition to terminal status '{new_status}' already applied - no-op")
            return False

        if not cls.is_valid_transition(current_status, new_status):
            raise InvalidTransition(
                f"Cannot move transaction from '{current_status}' to '{new_status}'",
                current_status=current_status,
            )
        return True


__all__ = ["EscrowStateValidator", "TIMESTAMP_FIELDS"]
