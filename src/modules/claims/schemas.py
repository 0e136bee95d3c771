"""Pydantic v2 schemas for the claim coordinator."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from src.exceptions import AlreadyClaimedException, InvalidStateException
from src.models.enums import ClaimOutcome, OrderCategory, OrderState, RoleSlot


class ClaimableOrder(BaseModel):
    """Summary shown to agents browsing unassigned work. May be stale."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    category: OrderCategory
    state: OrderState
    territory: str | None = None
    pickup_site: str | None = None
    selling_price: Decimal
    currency: str
    created_at: datetime


class ClaimResult(BaseModel):
    outcome: ClaimOutcome
    order_id: uuid.UUID
    agent_id: uuid.UUID
    slot: RoleSlot
    # State and version after the claim; the observed ones on rejection
    state: OrderState
    version: int
    holder_id: uuid.UUID | None = None
    message: str | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == ClaimOutcome.ACCEPTED

    def raise_for_outcome(self) -> ClaimResult:
        """Return self if accepted, else raise the matching domain exception."""
        if self.outcome == ClaimOutcome.ACCEPTED:
            return self
        details = [
            {
                "order_id": str(self.order_id),
                "slot": self.slot.value,
                "state": self.state.value,
                "holder_id": str(self.holder_id) if self.holder_id else None,
            }
        ]
        if self.outcome == ClaimOutcome.ALREADY_CLAIMED:
            raise AlreadyClaimedException(self.message or "Slot already claimed", details)
        raise InvalidStateException(self.message or "Order cannot be claimed", details)
