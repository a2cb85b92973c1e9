import pytest

from affiliate_engine.core.exceptions import InvalidTransitionError
from affiliate_engine.services.commission_state_machine import (
    can_reverse,
    can_transition,
    get_transition_action,
    is_terminal,
    validate_payout_transition,
    validate_transition,
)


@pytest.mark.parametrize("current,new", [
    ("PENDING", "APPROVED"),
    ("PENDING", "REVERSED"),
    ("APPROVED", "PAID"),
    ("APPROVED", "REVERSED"),
])
def test_forward_transitions_allowed(current, new):
    assert can_transition(current, new)
    validate_transition(current, new)


@pytest.mark.parametrize("current,new", [
    ("APPROVED", "PENDING"),
    ("PENDING", "PAID"),
    ("PENDING", "PENDING"),
])
def test_backward_or_skipping_transitions_rejected(current, new):
    assert not can_transition(current, new)
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(current, new)
    assert exc_info.value.error_code == "INVALID_TRANSITION"


@pytest.mark.parametrize("terminal", ["PAID", "REVERSED"])
def test_terminal_states_cannot_move(terminal):
    assert is_terminal(terminal)
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(terminal, "APPROVED")
    assert exc_info.value.error_code == "TERMINAL_STATE"
    assert exc_info.value.status_code == 400


def test_only_unsettled_events_reverse_in_place():
    assert can_reverse("PENDING")
    assert can_reverse("APPROVED")
    assert not can_reverse("PAID")
    assert not can_reverse("REVERSED")


def test_payout_transitions():
    validate_payout_transition("PROCESSING", "COMPLETED")
    validate_payout_transition("PROCESSING", "FAILED")
    with pytest.raises(InvalidTransitionError):
        validate_payout_transition("COMPLETED", "FAILED")
    with pytest.raises(InvalidTransitionError):
        validate_payout_transition("FAILED", "PROCESSING")


def test_transition_action_labels():
    assert get_transition_action("PENDING", "APPROVED") == "Approve"
    assert get_transition_action("PROCESSING", "FAILED") == "Fail Payout"
    assert get_transition_action("PAID", "PENDING") == "PAID -> PENDING"
