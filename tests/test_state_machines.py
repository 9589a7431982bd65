"""
Test Custody and Operation State Machines
Every (current, target) pair is checked against the fixed transition tables
"""

import pytest

from models import CustodyStatus, OperationStatus
from services.errors import BadRequestError
from utils.custody_state_machine import CustodyStateValidator, OperationStateValidator

CUSTODY_ALLOWED = {
    ("UNLINKED", "PENDING"),
    ("PENDING", "LINKED"),
    ("PENDING", "UNLINKED"),
    ("LINKED", "MINTED"),
    ("LINKED", "FAILED"),
    ("MINTED", "MINTED"),
    ("MINTED", "WITHDRAWN"),
    ("MINTED", "BURNED"),
    ("MINTED", "FROZEN"),
    ("MINTED", "FAILED"),
    ("FROZEN", "MINTED"),
    ("FAILED", "LINKED"),
    ("FAILED", "MINTED"),
}

OPERATION_ALLOWED = {
    ("PENDING_MAKER", "PENDING_CHECKER"),
    ("PENDING_CHECKER", "APPROVED"),
    ("PENDING_CHECKER", "REJECTED"),
    ("APPROVED", "EXECUTING"),
    ("APPROVED", "EXECUTED"),
    ("APPROVED", "FAILED"),
    ("EXECUTING", "EXECUTED"),
    ("EXECUTING", "FAILED"),
}


class TestCustodyStateValidator:
    """Custody lifecycle table"""

    @pytest.mark.parametrize("current", [s.value for s in CustodyStatus])
    @pytest.mark.parametrize("target", [s.value for s in CustodyStatus])
    def test_table_matches_every_pair(self, current, target):
        expected = (current, target) in CUSTODY_ALLOWED
        assert CustodyStateValidator.is_valid_transition(current, target) is expected

    def test_new_record_starts_pending(self):
        assert CustodyStateValidator.get_valid_transitions(None) == {"PENDING"}

    @pytest.mark.parametrize("status", ["WITHDRAWN", "BURNED"])
    def test_terminal_states(self, status):
        assert CustodyStateValidator.is_terminal_state(status)
        assert CustodyStateValidator.get_valid_transitions(status) == set()

    def test_invalid_transition_names_both_statuses(self):
        with pytest.raises(BadRequestError) as exc_info:
            CustodyStateValidator.validate_transition("PENDING", "MINTED")

        error = exc_info.value
        assert "PENDING" in error.message and "MINTED" in error.message
        assert error.status_code == 400
        assert error.details["allowed"] == ["LINKED", "UNLINKED"]


class TestOperationStateValidator:
    """Maker-checker table"""

    @pytest.mark.parametrize("current", [s.value for s in OperationStatus])
    @pytest.mark.parametrize("target", [s.value for s in OperationStatus])
    def test_table_matches_every_pair(self, current, target):
        expected = (current, target) in OPERATION_ALLOWED
        assert OperationStateValidator.is_valid_transition(current, target) is expected

    @pytest.mark.parametrize("status", ["EXECUTED", "REJECTED", "FAILED"])
    def test_terminal_states(self, status):
        assert OperationStateValidator.is_terminal_state(status)

    def test_executing_is_not_terminal(self):
        assert not OperationStateValidator.is_terminal_state(OperationStatus.EXECUTING.value)

    def test_reapproval_is_rejected(self):
        with pytest.raises(BadRequestError):
            OperationStateValidator.validate_transition("APPROVED", "APPROVED")
