"""Pydantic v2 schemas for ledger requests and order views."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import ActorRole, OrderCategory, OrderEvent, OrderState
from src.modules.commission.schemas import CommissionRecordResponse

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class OrderCreate(BaseModel):
    category: OrderCategory
    purchase_price: Decimal = Field(..., gt=0, decimal_places=2)
    buyer_id: uuid.UUID
    markup: Decimal | None = Field(None, ge=0)
    referral_source: uuid.UUID | None = None
    territory: str | None = Field(None, max_length=100)
    pickup_site: str | None = Field(None, max_length=100)
    site_manager_assisted: bool = False
    currency: str | None = Field(None, min_length=3, max_length=3)


class TransitionRequest(BaseModel):
    event: OrderEvent
    acting_role: ActorRole
    actor_id: uuid.UUID | None = None
    reason: str | None = Field(None, max_length=1000)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class OrderTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    from_state: OrderState
    to_state: OrderState
    event: OrderEvent
    acting_role: ActorRole
    actor_id: uuid.UUID | None = None
    reason: str | None = None
    created_at: datetime


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    category: OrderCategory
    state: OrderState
    version: int
    purchase_price: Decimal
    markup: Decimal
    selling_price: Decimal
    currency: str
    buyer_id: uuid.UUID
    referral_source: uuid.UUID | None = None
    territory: str | None = None
    pickup_site: str | None = None
    site_manager_assisted: bool
    assigned_delivery_agent_id: uuid.UUID | None = None
    assigned_site_manager_id: uuid.UUID | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class OrderDetailResponse(OrderResponse):
    commission_record: CommissionRecordResponse | None = None
    transitions: list[OrderTransitionResponse] = []
