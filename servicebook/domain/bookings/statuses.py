from servicebook.domain.errors import InvalidTransition

HELD = "held"
PENDING_PAYMENT = "pending_payment"
CONFIRMED = "confirmed"
ASSIGNED = "assigned"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
REJECTED = "rejected"
CANCELLED = "cancelled"
EXPIRED = "expired"

STATUSES = {HELD, PENDING_PAYMENT, CONFIRMED, ASSIGNED, IN_PROGRESS, COMPLETED, REJECTED, CANCELLED, EXPIRED}
TERMINAL_STATUSES = {COMPLETED, REJECTED, CANCELLED, EXPIRED}
FUNDED_STATUSES = {CONFIRMED, ASSIGNED, IN_PROGRESS, COMPLETED}

BOOKING_TRANSITIONS: dict[str, set[str]] = {
    HELD: {PENDING_PAYMENT, EXPIRED, CANCELLED, REJECTED},
    PENDING_PAYMENT: {CONFIRMED, CANCELLED, REJECTED},
    CONFIRMED: {ASSIGNED, CANCELLED, REJECTED},
    # assigned -> confirmed: the accepted worker was withdrawn or failed before starting.
    ASSIGNED: {IN_PROGRESS, CONFIRMED, CANCELLED, REJECTED},
    IN_PROGRESS: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    REJECTED: set(),
    CANCELLED: set(),
    EXPIRED: set(),
}

HOLD_ACTIVE = "active"
HOLD_PROMOTED = "promoted"
HOLD_RELEASED = "released"
HOLD_EXPIRED = "expired"
LIVE_HOLD_STATUSES = {HOLD_ACTIVE, HOLD_PROMOTED}

QUOTE_PROVIDED = "provided"
QUOTE_ACCEPTED = "accepted"
QUOTE_REJECTED = "rejected"

PAYMENT_UNPAID = "unpaid"
PAYMENT_PARTIALLY_PAID = "partially_paid"
PAYMENT_PAID = "paid"
PAYMENT_PARTIALLY_REFUNDED = "partially_refunded"
PAYMENT_REFUNDED = "refunded"

METHOD_GATEWAY = "gateway"
METHOD_WALLET = "wallet"
PAYMENT_METHODS = {METHOD_GATEWAY, METHOD_WALLET}

DISPATCH_FLAG_UNASSIGNABLE = "NoAvailableWorker"


def can_transition(current: str, target: str) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, set())


def assert_valid_booking_transition(current: str, target: str) -> None:
    allowed = BOOKING_TRANSITIONS.get(current, set())
    if not allowed:
        raise InvalidTransition(
            f"Booking is already in terminal status: {current}", from_status=current, to_status=target
        )
    if target not in allowed:
        raise InvalidTransition(
            f"Cannot transition booking from {current} to {target}", from_status=current, to_status=target
        )


def normalize_payment_method(value: str) -> str:
    lowered = value.lower()
    if lowered not in PAYMENT_METHODS:
        raise ValueError("Invalid payment method")
    return lowered
