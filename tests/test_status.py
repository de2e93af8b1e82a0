"""
Tests for application statuses and the transition table
"""

import pytest

from origination.status import (
    ApplicationStatus, TRANSITIONS, TERMINAL_STATUSES, REVIEW_STATUSES,
    allowed_transitions, can_transition, is_terminal, validate_transition
)

S = ApplicationStatus

EXPECTED_TABLE = {
    S.DRAFT: {S.SUBMITTED, S.CANCELLED},
    S.SUBMITTED: {S.IN_REVIEW, S.DOCS_PENDING, S.CORRECTIONS_PENDING, S.CANCELLED},
    S.IN_REVIEW: {S.DOCS_PENDING, S.CORRECTIONS_PENDING, S.ANALYST_REVIEW, S.APPROVED, S.REJECTED, S.CANCELLED},
    S.DOCS_PENDING: {S.IN_REVIEW, S.SUBMITTED, S.CANCELLED},
    S.CORRECTIONS_PENDING: {S.IN_REVIEW, S.SUBMITTED, S.CANCELLED},
    S.ANALYST_REVIEW: {S.SUPERVISOR_REVIEW, S.DOCS_PENDING, S.CORRECTIONS_PENDING, S.APPROVED, S.REJECTED,
                       S.CANCELLED},
    S.SUPERVISOR_REVIEW: {S.APPROVED, S.REJECTED, S.CANCELLED},
    S.APPROVED: {S.SYNCED, S.DISBURSED, S.CANCELLED},
    S.DISBURSED: {S.ACTIVE, S.COMPLETED, S.DEFAULT},
    S.ACTIVE: {S.COMPLETED, S.DEFAULT},
}

ALL_PAIRS = [(current, target) for current in ApplicationStatus for target in ApplicationStatus]


class TestApplicationStatus:
    """Test the status type"""

    def test_sixteen_statuses(self):
        assert len(list(ApplicationStatus)) == 16

    def test_internal_statuses(self):
        internal = {status for status in ApplicationStatus if status.internal}
        assert internal == {S.ANALYST_REVIEW, S.SUPERVISOR_REVIEW, S.SYNCED}
        assert S.ANALYST_REVIEW not in ApplicationStatus.public_statuses()
        assert S.IN_REVIEW in ApplicationStatus.public_statuses()

    def test_from_code(self):
        assert ApplicationStatus.from_code("in_review") == S.IN_REVIEW
        assert ApplicationStatus.from_code(S.DEFAULT) == S.DEFAULT
        with pytest.raises(ValueError):
            ApplicationStatus.from_code("ARCHIVED")

    def test_labels(self):
        assert S.DRAFT.label == "Borrador"
        assert S.DEFAULT.label == "En mora"
        assert S.DEFAULT.code == "DEFAULT"

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {S.REJECTED, S.CANCELLED, S.SYNCED, S.COMPLETED, S.DEFAULT}
        assert S.CANCELLED.is_terminal
        assert is_terminal(S.SYNCED)
        assert not is_terminal(S.APPROVED)


class TestTransitionTable:
    """Test the allowed-transition table"""

    def test_table_matches_lifecycle(self):
        for current, targets in EXPECTED_TABLE.items():
            assert set(TRANSITIONS[current]) == targets, current

    def test_every_status_has_a_row(self):
        assert set(TRANSITIONS) == set(ApplicationStatus)

    @pytest.mark.parametrize("current,target", ALL_PAIRS)
    def test_validate_transition_matches_table(self, current, target):
        check = validate_transition(current, target)
        expected = target in EXPECTED_TABLE.get(current, set())

        assert check.allowed is expected
        assert bool(check) is expected
        assert can_transition(current, target) is expected
        assert check.current_status == current
        assert check.attempted_status == target
        if not expected:
            assert check.reason

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.code))
    def test_terminal_statuses_admit_nothing(self, terminal):
        assert allowed_transitions(terminal) == []
        for target in ApplicationStatus:
            assert not can_transition(terminal, target)

    def test_approved_can_be_disbursed_directly(self):
        """APPROVED -> DISBURSED does not require SYNCED first"""
        assert can_transition(S.APPROVED, S.DISBURSED)
        assert can_transition(S.APPROVED, S.SYNCED)
        assert not can_transition(S.SYNCED, S.DISBURSED)

    def test_counter_offered_is_not_reachable(self):
        assert all(S.COUNTER_OFFERED not in targets for targets in TRANSITIONS.values())

    def test_draft_cannot_be_approved(self):
        check = validate_transition(S.DRAFT, S.APPROVED)
        assert not check.allowed
        assert "DRAFT" in check.reason and "APPROVED" in check.reason

    def test_allowed_transitions_hide_internal(self):
        assert S.ANALYST_REVIEW in allowed_transitions(S.IN_REVIEW)
        assert S.ANALYST_REVIEW not in allowed_transitions(S.IN_REVIEW, include_internal=False)
        assert allowed_transitions(S.APPROVED, include_internal=False) == [S.CANCELLED, S.DISBURSED]

    def test_review_statuses(self):
        assert REVIEW_STATUSES == {S.IN_REVIEW, S.ANALYST_REVIEW, S.SUPERVISOR_REVIEW}
