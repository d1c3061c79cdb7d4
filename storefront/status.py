from storefront.errors import InvalidTransitionError
from storefront.models import OrderStatus

INITIAL_STATUS = OrderStatus.PENDING

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.DELIVERY}),
    OrderStatus.DELIVERY: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

CANCELLABLE = frozenset(status for status, targets in TRANSITIONS.items() if OrderStatus.CANCELLED in targets)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return OrderStatus(new) in TRANSITIONS.get(OrderStatus(current), frozenset())


def ensure_transition(current: OrderStatus, new: OrderStatus) -> None:
    if not can_transition(current, new):
        raise InvalidTransitionError(current, new)


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[OrderStatus(status)]


def is_valid_walk(statuses: list[OrderStatus]) -> bool:
    """True if ``statuses`` starts at the initial status and follows the table."""
    if not statuses or OrderStatus(statuses[0]) != INITIAL_STATUS:
        return False
    return all(can_transition(a, b) for a, b in zip(statuses, statuses[1:]))
