"""Order lifecycle path graphs, acting-role rules, and event type strings."""

from __future__ import annotations

from src.models.enums import ActorRole, OrderCategory, OrderEvent, OrderState, RoleSlot

# ---------------------------------------------------------------------------
# Shared prefix: checkout -> claim -> seller pickup
# ---------------------------------------------------------------------------

_COMMON_PATH: dict[tuple[OrderState, OrderEvent], OrderState] = {
    (OrderState.PENDING, OrderEvent.CONFIRM_PAYMENT): OrderState.PROCESSING,
    (OrderState.PENDING, OrderEvent.AGENT_CLAIMED): OrderState.ASSIGNED_TO_DELIVERY_AGENT,
    (OrderState.PROCESSING, OrderEvent.AGENT_CLAIMED): OrderState.ASSIGNED_TO_DELIVERY_AGENT,
    (OrderState.ASSIGNED_TO_DELIVERY_AGENT, OrderEvent.DEPART_FOR_SELLER): OrderState.EN_ROUTE_TO_SELLER,
    (OrderState.EN_ROUTE_TO_SELLER, OrderEvent.ARRIVE_AT_SELLER): OrderState.AT_SELLER,
    (OrderState.AT_SELLER, OrderEvent.CONFIRM_PICKUP): OrderState.PICKED_UP,
}

# (state, event) -> successor, per category. Cancellation is handled separately.
TRANSITIONS: dict[OrderCategory, dict[tuple[OrderState, OrderEvent], OrderState]] = {
    OrderCategory.PHYSICAL: {
        **_COMMON_PATH,
        (OrderState.PICKED_UP, OrderEvent.DEPART_FOR_SITE): OrderState.EN_ROUTE_TO_SITE,
        (OrderState.EN_ROUTE_TO_SITE, OrderEvent.DEPOSIT_AT_SITE): OrderState.DEPOSITED_AT_SITE,
        (OrderState.DEPOSITED_AT_SITE, OrderEvent.MARK_READY_FOR_PICKUP): OrderState.READY_FOR_PICKUP,
        (OrderState.READY_FOR_PICKUP, OrderEvent.BUYER_COLLECTED): OrderState.COMPLETED,
    },
    OrderCategory.LOCAL_MARKET: {
        **_COMMON_PATH,
        (OrderState.PICKED_UP, OrderEvent.DEPART_FOR_BUYER): OrderState.EN_ROUTE_TO_BUYER,
        (OrderState.EN_ROUTE_TO_BUYER, OrderEvent.CONFIRM_DELIVERY): OrderState.DELIVERED,
    },
}

# Terminal states (no further transitions)
SUCCESS_STATES: frozenset[OrderState] = frozenset(
    {OrderState.DELIVERED, OrderState.COMPLETED}
)
TERMINAL_STATES: frozenset[OrderState] = SUCCESS_STATES | {OrderState.CANCELLED}

# ---------------------------------------------------------------------------
# Acting roles
# ---------------------------------------------------------------------------

DELIVERY_ROLE_BY_CATEGORY: dict[OrderCategory, ActorRole] = {
    OrderCategory.PHYSICAL: ActorRole.PICKUP_DELIVERY_AGENT,
    OrderCategory.LOCAL_MARKET: ActorRole.FAST_DELIVERY_AGENT,
}

# Events driven by whoever holds the delivery slot; role resolved per category
DELIVERY_LEG_EVENTS: frozenset[OrderEvent] = frozenset(
    {
        OrderEvent.AGENT_CLAIMED,
        OrderEvent.DEPART_FOR_SELLER,
        OrderEvent.ARRIVE_AT_SELLER,
        OrderEvent.CONFIRM_PICKUP,
        OrderEvent.DEPART_FOR_SITE,
        OrderEvent.DEPART_FOR_BUYER,
    }
)

EVENT_ROLES: dict[OrderEvent, frozenset[ActorRole]] = {
    OrderEvent.CONFIRM_PAYMENT: frozenset({ActorRole.ADMIN, ActorRole.SYSTEM}),
    OrderEvent.DEPOSIT_AT_SITE: frozenset({ActorRole.PICKUP_SITE_MANAGER}),
    OrderEvent.MARK_READY_FOR_PICKUP: frozenset({ActorRole.PICKUP_SITE_MANAGER}),
    OrderEvent.BUYER_COLLECTED: frozenset(
        {ActorRole.PICKUP_SITE_MANAGER, ActorRole.BUYER}
    ),
    OrderEvent.CONFIRM_DELIVERY: frozenset(
        {ActorRole.BUYER, ActorRole.FAST_DELIVERY_AGENT}
    ),
    OrderEvent.CANCEL: frozenset({ActorRole.BUYER, ActorRole.ADMIN, ActorRole.SYSTEM}),
}

# ---------------------------------------------------------------------------
# Role slots and claims
# ---------------------------------------------------------------------------

# Events that bind a role slot; only the claim coordinator may fire them
CLAIM_EVENTS: dict[RoleSlot, OrderEvent] = {
    RoleSlot.DELIVERY: OrderEvent.AGENT_CLAIMED,
    RoleSlot.SITE_MANAGER: OrderEvent.DEPOSIT_AT_SITE,
}

SLOT_BY_ROLE: dict[ActorRole, RoleSlot] = {
    ActorRole.PICKUP_DELIVERY_AGENT: RoleSlot.DELIVERY,
    ActorRole.FAST_DELIVERY_AGENT: RoleSlot.DELIVERY,
    ActorRole.PICKUP_SITE_MANAGER: RoleSlot.SITE_MANAGER,
}

# Categories each agent role may serve
CATEGORIES_BY_ROLE: dict[ActorRole, frozenset[OrderCategory]] = {
    ActorRole.PICKUP_DELIVERY_AGENT: frozenset({OrderCategory.PHYSICAL}),
    ActorRole.FAST_DELIVERY_AGENT: frozenset({OrderCategory.LOCAL_MARKET}),
    ActorRole.PICKUP_SITE_MANAGER: frozenset({OrderCategory.PHYSICAL}),
}

CLAIMABLE_STATES: dict[RoleSlot, frozenset[OrderState]] = {
    RoleSlot.DELIVERY: frozenset({OrderState.PENDING, OrderState.PROCESSING}),
    RoleSlot.SITE_MANAGER: frozenset({OrderState.EN_ROUTE_TO_SITE}),
}

# A stalled delivery claim may be released only before the goods are picked up
RELEASABLE_STATES: frozenset[OrderState] = frozenset(
    {
        OrderState.ASSIGNED_TO_DELIVERY_AGENT,
        OrderState.EN_ROUTE_TO_SELLER,
        OrderState.AT_SELLER,
    }
)
RELEASE_TARGET_STATE = OrderState.PROCESSING

# States in which an agent's claim still counts against its capacity
ACTIVE_STATES: frozenset[OrderState] = frozenset(OrderState) - TERMINAL_STATES

# ---------------------------------------------------------------------------
# Event type strings for the outbox
# ---------------------------------------------------------------------------

EVENT_ORDER_CREATED = "order.created"
EVENT_ORDER_CLAIMED = "order.claimed"
EVENT_ORDER_CLAIM_RELEASED = "order.claim_released"
EVENT_ORDER_TRANSITIONED = "order.transitioned"
EVENT_ORDER_CANCELLED = "order.cancelled"
EVENT_COMMISSION_FINALIZED = "commission.finalized"
