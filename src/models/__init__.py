# Import all models so SQLAlchemy metadata is populated for create_all
from src.models.agent import Agent
from src.models.commission_record import CommissionPayout, CommissionRecord
from src.models.enums import (
    ActorRole,
    ClaimOutcome,
    EventStatus,
    OrderCategory,
    OrderEvent,
    OrderState,
    PayoutRole,
    RoleSlot,
)
from src.models.event_outbox import EventOutbox
from src.models.order import Order
from src.models.order_transition import OrderTransition

__all__ = [
    "ActorRole",
    "Agent",
    "ClaimOutcome",
    "CommissionPayout",
    "CommissionRecord",
    "EventOutbox",
    "EventStatus",
    "Order",
    "OrderCategory",
    "OrderEvent",
    "OrderState",
    "OrderTransition",
    "PayoutRole",
    "RoleSlot",
]
