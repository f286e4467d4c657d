# apps/delivery/state_machine.py
"""
Delivery status transition table.

`Delivery.update_status` is a plain setter; every service-level status
change goes through `transition()` first so illegal moves fail loudly.
"""
from apps.utils.exceptions import InvalidStateError

PENDING = "pending"
ASSIGNED = "assigned"
ACCEPTED = "accepted"
ARRIVING_RESTAURANT = "arriving_restaurant"
AT_RESTAURANT = "at_restaurant"
PICKED_UP = "picked_up"
IN_TRANSIT = "in_transit"
ARRIVED = "arrived"
DELIVERED = "delivered"
FAILED = "failed"
CANCELLED = "cancelled"
RETURNED = "returned"

STATUS_CHOICES = (
    (PENDING, "Pending"),
    (ASSIGNED, "Assigned"),
    (ACCEPTED, "Accepted"),
    (ARRIVING_RESTAURANT, "Arriving at Restaurant"),
    (AT_RESTAURANT, "At Restaurant"),
    (PICKED_UP, "Picked Up"),
    (IN_TRANSIT, "In Transit"),
    (ARRIVED, "Arrived"),
    (DELIVERED, "Delivered"),
    (FAILED, "Failed"),
    (CANCELLED, "Cancelled"),
    (RETURNED, "Returned"),
)

TRANSITIONS = {
    PENDING: frozenset({ASSIGNED, CANCELLED}),
    ASSIGNED: frozenset({ACCEPTED, PENDING, CANCELLED}),
    ACCEPTED: frozenset({ARRIVING_RESTAURANT, PENDING, CANCELLED}),
    ARRIVING_RESTAURANT: frozenset({AT_RESTAURANT, PENDING, CANCELLED}),
    AT_RESTAURANT: frozenset({PICKED_UP, PENDING, CANCELLED}),
    PICKED_UP: frozenset({IN_TRANSIT, CANCELLED, RETURNED}),
    IN_TRANSIT: frozenset({ARRIVED, FAILED, RETURNED}),
    ARRIVED: frozenset({DELIVERED, FAILED, RETURNED}),
    FAILED: frozenset({PENDING, RETURNED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
    RETURNED: frozenset(),
}

# Driver is holding the job
DRIVER_BUSY_STATUSES = frozenset({
    ASSIGNED, ACCEPTED, ARRIVING_RESTAURANT, AT_RESTAURANT, PICKED_UP, IN_TRANSIT, ARRIVED,
})

# Closed outcomes; `failed` can still be re-queued or returned by dispatch
CLOSED_STATUSES = frozenset({DELIVERED, FAILED, CANCELLED, RETURNED})

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

COMPLETABLE_STATUSES = frozenset({IN_TRANSIT, ARRIVED})

# Driver may hand the job back until the food is picked up
REJECTABLE_STATUSES = frozenset({ASSIGNED, ACCEPTED, ARRIVING_RESTAURANT, AT_RESTAURANT})


class InvalidTransition(InvalidStateError):
    default_code = "invalid_transition"

    def __init__(self, current, new):
        self.current = current
        self.new = new
        super().__init__(f"Cannot move delivery from '{current}' to '{new}'")


def allowed_transitions(current):
    return TRANSITIONS.get(current, frozenset())


def can_transition(current, new):
    return new in allowed_transitions(current)


def transition(current, new):
    """Returns `new` if the move is legal, raises InvalidTransition otherwise."""
    if new not in TRANSITIONS:
        raise InvalidTransition(current, new)
    if not can_transition(current, new):
        raise InvalidTransition(current, new)
    return new
