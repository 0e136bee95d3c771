"""Order model: fulfillment state, role slots and frozen economics."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import OrderCategory, OrderState

if TYPE_CHECKING:
    from src.models.agent import Agent
    from src.models.commission_record import CommissionRecord
    from src.models.order_transition import OrderTransition


class Order(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True
    )
    category: Mapped[OrderCategory] = mapped_column(nullable=False)
    state: Mapped[OrderState] = mapped_column(
        nullable=False, default=OrderState.PENDING
    )
    # Bumped on every write; conditional updates compare against it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Economics (frozen at creation)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    markup: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    selling_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Parties
    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    referral_source: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    # Routing
    territory: Mapped[str | None] = mapped_column(String(100))
    pickup_site: Mapped[str | None] = mapped_column(String(100))
    # Site manager helped the buyer with the purchase (higher commission rate)
    site_manager_assisted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # Role slots
    assigned_delivery_agent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="SET NULL")
    )
    delivery_agent_assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    assigned_site_manager_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("agents.id", ondelete="SET NULL")
    )
    site_manager_assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    # Terminal bookkeeping
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Relationships
    delivery_agent: Mapped[Agent | None] = relationship(
        "Agent", foreign_keys=[assigned_delivery_agent_id], lazy="noload"
    )
    site_manager: Mapped[Agent | None] = relationship(
        "Agent", foreign_keys=[assigned_site_manager_id], lazy="noload"
    )
    commission_record: Mapped[CommissionRecord | None] = relationship(
        "CommissionRecord", back_populates="order", lazy="noload", uselist=False
    )
    transitions: Mapped[list[OrderTransition]] = relationship(
        "OrderTransition",
        back_populates="order",
        lazy="noload",
        cascade="all, delete-orphan",
        order_by="OrderTransition.created_at",
    )

    __table_args__ = (
        Index("ix_orders_state_category", "state", "category"),
        Index("ix_orders_territory", "territory"),
        Index("ix_orders_pickup_site", "pickup_site"),
        Index("ix_orders_delivery_agent", "assigned_delivery_agent_id"),
        Index("ix_orders_site_manager", "assigned_site_manager_id"),
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number} state={self.state}>"
