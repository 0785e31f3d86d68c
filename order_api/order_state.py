"""
Order lifecycle state machine. Status climbs one step per tick until the terminal threshold,
where the order is marked completed and no further ticks happen.

    Created (status 0) -> Advancing (1..terminal-1) -> Completed (status >= terminal)
"""
from dataclasses import dataclass

from order_api.models import Order

TERMINAL_STATUS = 6

PHASE_CREATED = "created"
PHASE_ADVANCING = "advancing"
PHASE_COMPLETED = "completed"


@dataclass(frozen=True)
class Advancing:
    """A continuation that still has ticks to run. last_known_status is its private counter."""
    order_id: str
    last_known_status: int


@dataclass(frozen=True)
class Completed:
    order_id: str
    status: int


def advance(current_status: int) -> int:
    return current_status + 1


def tick(state: Advancing, terminal_status: int = TERMINAL_STATUS) -> Advancing | Completed:
    """
    One transition. Uses the continuation's own counter, never the status read from the store.
    """
    next_status = advance(state.last_known_status)
    if next_status < terminal_status:
        return Advancing(order_id=state.order_id, last_known_status=next_status)
    return Completed(order_id=state.order_id, status=next_status)


def apply_state(order: Order, state: Advancing | Completed) -> Order:
    """Write the transition result into a freshly fetched record (in place) and return it."""
    if isinstance(state, Completed):
        order.status = state.status
        order.completed = True
    else:
        order.status = state.last_known_status
    return order


def phase_of(order: Order, terminal_status: int = TERMINAL_STATUS) -> str:
    if order.completed or order.status >= terminal_status:
        return PHASE_COMPLETED
    if order.status == 0:
        return PHASE_CREATED
    return PHASE_ADVANCING
