"""Order state machine: pure logic, no DB dependency.

Defines the order lifecycle, allowed transitions, actors, and helpers for
validation and action discovery.  A missing (status, action) pair is a state
conflict no matter who asks; only a valid pair is then checked against the
allowed actors.
"""

from enum import StrEnum

from gigmarket.core.errors import InvalidState, Unauthorized


class OrderStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderAction(StrEnum):
    FUND = "fund"
    ACCEPT = "accept"
    DELIVER = "deliver"
    REQUEST_REVISION = "request_revision"
    APPROVE = "approve"
    APPROVE_MILESTONE = "approve_milestone"
    CANCEL = "cancel"
    DISPUTE = "dispute"
    AUTO_RELEASE = "auto_release"
    EXPIRE = "expire"
    RESOLVE = "resolve"
    REFUND = "refund"


class Actor(StrEnum):
    BUYER = "buyer"
    SELLER = "seller"
    ARBITRATOR = "arbitrator"
    SYSTEM = "system"
    OUTSIDER = "outsider"


class InvalidTransitionError(InvalidState):
    """Raised when an order transition does not exist for the current status."""

    def __init__(self, current: str, action: str, actor: str | None = None):
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Invalid transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        super().__init__(msg, current=current, action=action)


_PARTIES = frozenset({Actor.BUYER, Actor.SELLER})

# Mapping: (current_status, action) -> (new_status, frozenset_of_allowed_actors)
TRANSITIONS: dict[tuple[OrderStatus, OrderAction], tuple[OrderStatus, frozenset[Actor]]] = {
    # Funding keeps the order pending; the escrow moves to active
    (OrderStatus.PENDING, OrderAction.FUND): (
        OrderStatus.PENDING,
        frozenset({Actor.BUYER}),
    ),
    # Happy path
    (OrderStatus.PENDING, OrderAction.ACCEPT): (
        OrderStatus.IN_PROGRESS,
        frozenset({Actor.SELLER}),
    ),
    (OrderStatus.IN_PROGRESS, OrderAction.DELIVER): (
        OrderStatus.DELIVERED,
        frozenset({Actor.SELLER}),
    ),
    (OrderStatus.DELIVERED, OrderAction.APPROVE): (
        OrderStatus.COMPLETED,
        frozenset({Actor.BUYER}),
    ),
    # Revision cycle
    (OrderStatus.DELIVERED, OrderAction.REQUEST_REVISION): (
        OrderStatus.REVISION_REQUESTED,
        frozenset({Actor.BUYER}),
    ),
    (OrderStatus.REVISION_REQUESTED, OrderAction.DELIVER): (
        OrderStatus.DELIVERED,
        frozenset({Actor.SELLER}),
    ),
    # Milestone approval leaves the order where it is until the last one
    (OrderStatus.IN_PROGRESS, OrderAction.APPROVE_MILESTONE): (
        OrderStatus.IN_PROGRESS,
        frozenset({Actor.BUYER}),
    ),
    (OrderStatus.DELIVERED, OrderAction.APPROVE_MILESTONE): (
        OrderStatus.DELIVERED,
        frozenset({Actor.BUYER}),
    ),
    (OrderStatus.REVISION_REQUESTED, OrderAction.APPROVE_MILESTONE): (
        OrderStatus.REVISION_REQUESTED,
        frozenset({Actor.BUYER}),
    ),
    # Cancellation, before anything was delivered
    (OrderStatus.PENDING, OrderAction.CANCEL): (
        OrderStatus.CANCELLED,
        _PARTIES,
    ),
    (OrderStatus.IN_PROGRESS, OrderAction.CANCEL): (
        OrderStatus.CANCELLED,
        _PARTIES,
    ),
    # Disputes, from any active status
    (OrderStatus.PENDING, OrderAction.DISPUTE): (
        OrderStatus.DISPUTED,
        _PARTIES,
    ),
    (OrderStatus.IN_PROGRESS, OrderAction.DISPUTE): (
        OrderStatus.DISPUTED,
        _PARTIES,
    ),
    (OrderStatus.DELIVERED, OrderAction.DISPUTE): (
        OrderStatus.DISPUTED,
        _PARTIES,
    ),
    (OrderStatus.REVISION_REQUESTED, OrderAction.DISPUTE): (
        OrderStatus.DISPUTED,
        _PARTIES,
    ),
    # Dispute resolution
    (OrderStatus.DISPUTED, OrderAction.RESOLVE): (
        OrderStatus.COMPLETED,
        frozenset({Actor.ARBITRATOR}),
    ),
    (OrderStatus.DISPUTED, OrderAction.REFUND): (
        OrderStatus.REFUNDED,
        frozenset({Actor.ARBITRATOR}),
    ),
    # Sweeps
    (OrderStatus.DELIVERED, OrderAction.AUTO_RELEASE): (
        OrderStatus.COMPLETED,
        frozenset({Actor.SYSTEM}),
    ),
    (OrderStatus.PENDING, OrderAction.EXPIRE): (
        OrderStatus.CANCELLED,
        frozenset({Actor.SYSTEM}),
    ),
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

# Statuses where order chat messages are allowed
MESSAGING_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.IN_PROGRESS,
    OrderStatus.DELIVERED,
    OrderStatus.REVISION_REQUESTED,
    OrderStatus.DISPUTED,
})


def validate_transition(
    current: str, action: str, actor: str,
) -> OrderStatus:
    """Validate and return the new status for a transition.

    Raises InvalidTransitionError if the transition does not exist and
    Unauthorized if the actor may not perform it.
    """
    try:
        current_status = OrderStatus(current)
        order_action = OrderAction(action)
    except ValueError:
        raise InvalidTransitionError(current, action, actor)

    key = (current_status, order_action)
    if key not in TRANSITIONS:
        raise InvalidTransitionError(current, action, actor)

    new_status, allowed_actors = TRANSITIONS[key]

    if actor not in allowed_actors:
        raise Unauthorized(
            f"{actor} may not {order_action.value} an order that is {current_status.value}",
            action=order_action.value,
            actor=actor,
        )

    return new_status


def get_available_actions(current: str, actor: str) -> list[str]:
    """Return list of action names available for the given status and actor."""
    try:
        current_status = OrderStatus(current)
        actor_enum = Actor(actor)
    except ValueError:
        return []

    if current_status in TERMINAL_STATUSES:
        return []

    actions: list[str] = []
    for (status, action), (_, allowed_actors) in TRANSITIONS.items():
        if status != current_status:
            continue
        if actor_enum in allowed_actors:
            actions.append(action.value)

    return actions
