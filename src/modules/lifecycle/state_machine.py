"""Pure order lifecycle decisions: no I/O, persistence is the caller's job."""

from __future__ import annotations

from src.exceptions import IllegalTransitionException
from src.models.enums import ActorRole, OrderCategory, OrderEvent, OrderState
from src.modules.lifecycle.constants import (
    DELIVERY_LEG_EVENTS,
    DELIVERY_ROLE_BY_CATEGORY,
    EVENT_ROLES,
    RELEASABLE_STATES,
    RELEASE_TARGET_STATE,
    TERMINAL_STATES,
    TRANSITIONS,
)


def roles_for(category: OrderCategory, event: OrderEvent) -> frozenset[ActorRole]:
    """Acting roles allowed to fire ``event`` on an order of ``category``."""
    if event in DELIVERY_LEG_EVENTS:
        return frozenset({DELIVERY_ROLE_BY_CATEGORY[category]})
    return EVENT_ROLES.get(event, frozenset())


def transition(
    category: OrderCategory,
    state: OrderState,
    event: OrderEvent,
    acting_role: ActorRole,
) -> OrderState:
    """Return the successor of ``state`` under ``event``.

    Raises IllegalTransitionException when the pairing is not on the
    category's path graph, when ``state`` is terminal, or when
    ``acting_role`` may not fire ``event``.
    """
    if state in TERMINAL_STATES:
        raise IllegalTransitionException(
            state.value,
            event.value,
            f"Order is in terminal state '{state.value}'; event '{event.value}' rejected",
        )

    if event == OrderEvent.CANCEL:
        target = OrderState.CANCELLED
    else:
        target = TRANSITIONS[category].get((state, event))
        if target is None:
            raise IllegalTransitionException(
                state.value,
                event.value,
                f"Event '{event.value}' is not allowed from state '{state.value}' "
                f"for {category.value} orders. "
                f"Allowed: {[e.value for e in allowed_events(category, state)]}",
            )

    allowed_roles = roles_for(category, event)
    if acting_role not in allowed_roles:
        raise IllegalTransitionException(
            state.value,
            event.value,
            f"Role '{acting_role.value}' may not fire '{event.value}' from "
            f"state '{state.value}'. Allowed roles: {sorted(r.value for r in allowed_roles)}",
            details=[
                {"state": state.value, "event": event.value, "role": acting_role.value}
            ],
        )
    return target


def allowed_events(category: OrderCategory, state: OrderState) -> list[OrderEvent]:
    """Events that have a successor from ``state``, in path order."""
    if state in TERMINAL_STATES:
        return []
    events = [event for (source, event) in TRANSITIONS[category] if source == state]
    events.append(OrderEvent.CANCEL)
    return events


def is_replay(category: OrderCategory, state: OrderState, event: OrderEvent) -> bool:
    """True when ``event`` is the event that led into the non-terminal ``state``.

    Paths are linear, so a repeat of the event that produced the current
    state can only be a duplicate request. Terminal states never replay.
    """
    if state in TERMINAL_STATES:
        return False
    return any(
        target == state and path_event == event
        for (_, path_event), target in TRANSITIONS[category].items()
    )


def release_target(category: OrderCategory, state: OrderState) -> OrderState:
    """State an order returns to when its delivery claim is released."""
    if category not in TRANSITIONS:
        raise IllegalTransitionException(state.value, OrderEvent.RELEASE_CLAIM.value)
    if state not in RELEASABLE_STATES:
        raise IllegalTransitionException(
            state.value,
            OrderEvent.RELEASE_CLAIM.value,
            f"Delivery claim cannot be released from state '{state.value}'. "
            f"Releasable: {sorted(s.value for s in RELEASABLE_STATES)}",
        )
    return RELEASE_TARGET_STATE
