"""Pydantic v2 schemas for commission records and agent earnings."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from src.models.enums import PayoutRole


class CommissionPayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    role: PayoutRole
    beneficiary_id: uuid.UUID | None = None
    participant_present: bool
    nominal_rate: Decimal
    nominal_amount: Decimal
    amount: Decimal
    forfeited_to: PayoutRole | None = None


class CommissionRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    policy_name: str
    currency: str
    purchase_price: Decimal
    selling_price: Decimal
    platform_profit: Decimal
    maintenance_fee: Decimal
    platform_amount: Decimal
    rounding_residue: Decimal
    payouts: list[CommissionPayoutResponse] = []
    created_at: datetime


class AgentEarningsResponse(BaseModel):
    agent_id: uuid.UUID
    currency: str
    total: Decimal
    payouts: list[CommissionPayoutResponse]
