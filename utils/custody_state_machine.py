"""
Custody and Operation State Machines
Fixed transition tables enforced on every status write
"""

import logging
from typing import Dict, Optional, Set

from models import CustodyStatus, OperationStatus
from services.errors import BadRequestError

logger = logging.getLogger(__name__)


class _StateValidator:
    """Shared table lookups; subclasses supply VALID_TRANSITIONS"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {}
    ENTITY_NAME = "entity"

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return set(cls.VALID_TRANSITIONS.get(current_status, set()))

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.VALID_TRANSITIONS and not cls.VALID_TRANSITIONS[status]

    @classmethod
    def validate_transition(cls, current_status: Optional[str], new_status: str) -> None:
        """Raise BadRequestError naming both statuses when the move is not in the table"""
        if not cls.is_valid_transition(current_status, new_status):
            logger.warning(
                f"🚫 INVALID_{cls.ENTITY_NAME.upper()}_TRANSITION: {current_status} -> {new_status}"
            )
            raise BadRequestError(
                f"Invalid {cls.ENTITY_NAME} transition from {current_status} to {new_status}",
                details={
                    "current_status": current_status,
                    "target_status": new_status,
                    "allowed": sorted(cls.get_valid_transitions(current_status)),
                },
            )


class CustodyStateValidator(_StateValidator):
    """Validates custody record status changes"""

    ENTITY_NAME = "custody"

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {CustodyStatus.PENDING.value},
        CustodyStatus.UNLINKED.value: {CustodyStatus.PENDING.value},
        CustodyStatus.PENDING.value: {
            CustodyStatus.LINKED.value,
            CustodyStatus.UNLINKED.value,  # link rejected
        },
        CustodyStatus.LINKED.value: {
            CustodyStatus.MINTED.value,
            CustodyStatus.FAILED.value,
        },
        CustodyStatus.MINTED.value: {
            CustodyStatus.MINTED.value,  # partial burn, quantity update only
            CustodyStatus.WITHDRAWN.value,
            CustodyStatus.BURNED.value,
            CustodyStatus.FROZEN.value,
            CustodyStatus.FAILED.value,
        },
        CustodyStatus.FROZEN.value: {CustodyStatus.MINTED.value},
        CustodyStatus.FAILED.value: {
            CustodyStatus.LINKED.value,
            CustodyStatus.MINTED.value,
        },
        # Terminal states
        CustodyStatus.WITHDRAWN.value: set(),
        CustodyStatus.BURNED.value: set(),
    }


class OperationStateValidator(_StateValidator):
    """Validates maker-checker operation status changes"""

    ENTITY_NAME = "operation"

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {OperationStatus.PENDING_MAKER.value, OperationStatus.PENDING_CHECKER.value},
        OperationStatus.PENDING_MAKER.value: {OperationStatus.PENDING_CHECKER.value},
        OperationStatus.PENDING_CHECKER.value: {
            OperationStatus.APPROVED.value,
            OperationStatus.REJECTED.value,
        },
        OperationStatus.APPROVED.value: {
            OperationStatus.EXECUTING.value,
            OperationStatus.EXECUTED.value,
            OperationStatus.FAILED.value,
        },
        OperationStatus.EXECUTING.value: {
            OperationStatus.EXECUTED.value,
            OperationStatus.FAILED.value,
        },
        # Terminal states
        OperationStatus.EXECUTED.value: set(),
        OperationStatus.REJECTED.value: set(),
        OperationStatus.FAILED.value: set(),
    }

