"""Escrow lifecycle states and the allowed transitions between them."""

from enum import Enum

from custody_engine.common.exceptions import InvalidTransitionError


class EscrowStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    ON_CHAIN = "on-chain"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ParticipantStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


TERMINAL_STATES = frozenset({
    EscrowStatus.COMPLETED,
    EscrowStatus.CANCELLED,
    EscrowStatus.EXPIRED,
})

# Once an escrow is on-chain, cancelling it needs a compensating action.
CANCELLABLE_STATES = frozenset({
    EscrowStatus.DRAFT,
    EscrowStatus.SUBMITTED,
    EscrowStatus.APPROVED,
})

PAYMENT_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    EscrowStatus.DRAFT: frozenset({
        EscrowStatus.SUBMITTED, EscrowStatus.CANCELLED, EscrowStatus.EXPIRED,
    }),
    EscrowStatus.SUBMITTED: frozenset({
        EscrowStatus.APPROVED, EscrowStatus.CANCELLED, EscrowStatus.EXPIRED,
    }),
    EscrowStatus.APPROVED: frozenset({
        EscrowStatus.ON_CHAIN, EscrowStatus.CANCELLED, EscrowStatus.EXPIRED,
    }),
    EscrowStatus.ON_CHAIN: frozenset({EscrowStatus.COMPLETED, EscrowStatus.EXPIRED}),
    EscrowStatus.COMPLETED: frozenset(),
    EscrowStatus.CANCELLED: frozenset(),
    EscrowStatus.EXPIRED: frozenset(),
}

# Collections settle through participant payments and may complete from any
# live state once everyone has paid.
COLLECTION_TRANSITIONS: dict[EscrowStatus, frozenset[EscrowStatus]] = {
    status: (
        targets | {EscrowStatus.COMPLETED}
        if status not in TERMINAL_STATES else targets
    )
    for status, targets in PAYMENT_TRANSITIONS.items()
}


def _transitions(escrow_type: str) -> dict[EscrowStatus, frozenset[EscrowStatus]]:
    return COLLECTION_TRANSITIONS if escrow_type == "collection" else PAYMENT_TRANSITIONS


def can_transition(current: str, target: str, escrow_type: str = "payment") -> bool:
    return EscrowStatus(target) in _transitions(escrow_type)[EscrowStatus(current)]


def ensure_transition(current: str, target: str, escrow_type: str = "payment") -> EscrowStatus:
    """Return the target status or raise ``InvalidTransitionError``."""
    if not can_transition(current, target, escrow_type):
        raise InvalidTransitionError(
            f"Cannot move {escrow_type} escrow from "
            f"'{EscrowStatus(current).value}' to '{EscrowStatus(target).value}'"
        )
    return EscrowStatus(target)


def is_terminal(status: str) -> bool:
    return EscrowStatus(status) in TERMINAL_STATES
