"""OrderTransition model: append-only audit log of order state changes."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, UUIDPrimaryKeyMixin
from src.models.enums import ActorRole, OrderEvent, OrderState

if TYPE_CHECKING:
    from src.models.order import Order


class OrderTransition(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "order_transitions"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_state: Mapped[OrderState] = mapped_column(nullable=False)
    to_state: Mapped[OrderState] = mapped_column(nullable=False)
    event: Mapped[OrderEvent] = mapped_column(nullable=False)
    acting_role: Mapped[ActorRole] = mapped_column(nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    order: Mapped[Order] = relationship(
        "Order", back_populates="transitions", lazy="noload"
    )

    __table_args__ = (
        Index("ix_order_transitions_order_id", "order_id"),
    )
