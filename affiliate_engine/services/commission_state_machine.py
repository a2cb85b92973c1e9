"""
Commission and Payout State Machines

Single source of truth for ledger and payout status transitions. All
status changes go through validate_transition() before being written.

Commission lifecycle:
    PENDING -> APPROVED -> PAID
    PENDING | APPROVED -> REVERSED

Payout lifecycle:
    PROCESSING -> COMPLETED | FAILED
"""
from typing import Dict, List

from affiliate_engine.core.exceptions import InvalidTransitionError
from affiliate_engine.models.commission import CommissionEventStatus
from affiliate_engine.models.payout import PayoutStatus


COMMISSION_TRANSITIONS: Dict[str, List[str]] = {
    CommissionEventStatus.PENDING.value: [
        CommissionEventStatus.APPROVED.value,   # Hold period passed / admin approval
        CommissionEventStatus.REVERSED.value,   # Refund or chargeback during hold
    ],
    CommissionEventStatus.APPROVED.value: [
        CommissionEventStatus.PAID.value,       # Payout completed
        CommissionEventStatus.REVERSED.value,   # Refund before settlement
    ],
    CommissionEventStatus.PAID.value: [],       # Terminal; corrections are adjustment rows
    CommissionEventStatus.REVERSED.value: [],   # Terminal
}

PAYOUT_TRANSITIONS: Dict[str, List[str]] = {
    PayoutStatus.PROCESSING.value: [
        PayoutStatus.COMPLETED.value,
        PayoutStatus.FAILED.value,
    ],
    PayoutStatus.COMPLETED.value: [],
    PayoutStatus.FAILED.value: [],
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (CommissionEventStatus.PENDING.value, CommissionEventStatus.APPROVED.value): "Approve",
    (CommissionEventStatus.PENDING.value, CommissionEventStatus.REVERSED.value): "Reverse",
    (CommissionEventStatus.APPROVED.value, CommissionEventStatus.PAID.value): "Mark Paid",
    (CommissionEventStatus.APPROVED.value, CommissionEventStatus.REVERSED.value): "Reverse",
    (PayoutStatus.PROCESSING.value, PayoutStatus.COMPLETED.value): "Complete Payout",
    (PayoutStatus.PROCESSING.value, PayoutStatus.FAILED.value): "Fail Payout",
}

REVERSIBLE_STATUSES = [CommissionEventStatus.PENDING.value, CommissionEventStatus.APPROVED.value]


def can_transition(current_status: str, new_status: str, transitions: Dict[str, List[str]] = None) -> bool:
    """Check if a transition is allowed."""
    table = transitions if transitions is not None else COMMISSION_TRANSITIONS
    return new_status in table.get(current_status, [])


def get_transition_action(current_status: str, new_status: str) -> str:
    return TRANSITION_ACTIONS.get((current_status, new_status), f"{current_status} -> {new_status}")


def validate_transition(
    current_status: str,
    new_status: str,
    transitions: Dict[str, List[str]] = None,
    entity: str = "Commission",
) -> None:
    """
    Validate a status transition. Raises InvalidTransitionError if invalid.

    Same-status "transitions" are not allowed: callers treat them as
    already-applied and skip the write.
    """
    table = transitions if transitions is not None else COMMISSION_TRANSITIONS
    if can_transition(current_status, new_status, table):
        return

    allowed = table.get(current_status, [])
    if not allowed:
        raise InvalidTransitionError(
            f"{entity} in '{current_status}' status cannot be modified. This is a terminal state.",
            error_code="TERMINAL_STATE",
            details={"current_status": current_status, "requested_status": new_status},
        )
    raise InvalidTransitionError(
        f"Cannot change {entity.lower()} from '{current_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed)}",
        error_code="INVALID_TRANSITION",
        details={"current_status": current_status, "requested_status": new_status, "allowed": allowed},
    )


def validate_payout_transition(current_status: str, new_status: str) -> None:
    validate_transition(current_status, new_status, PAYOUT_TRANSITIONS, entity="Payout")


def is_terminal(status: str) -> bool:
    return status in (CommissionEventStatus.PAID.value, CommissionEventStatus.REVERSED.value)


def can_reverse(status: str) -> bool:
    return status in REVERSIBLE_STATUSES
