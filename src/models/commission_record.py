"""CommissionRecord / CommissionPayout models: realized payout breakdown per order."""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import PayoutRole

if TYPE_CHECKING:
    from src.models.order import Order


class CommissionRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "commission_records"

    # UNIQUE: concurrent finalizers converge on the first insert
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    policy_name: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    purchase_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    selling_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    platform_profit: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    maintenance_fee: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )
    platform_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    rounding_residue: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    # Relationships
    order: Mapped[Order] = relationship(
        "Order", back_populates="commission_record", lazy="noload"
    )
    payouts: Mapped[list[CommissionPayout]] = relationship(
        "CommissionPayout",
        back_populates="record",
        lazy="noload",
        cascade="all, delete-orphan",
    )


class CommissionPayout(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "commission_payouts"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("commission_records.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[PayoutRole] = mapped_column(nullable=False)
    # Agent or referrer credited; NULL for the platform and absent roles
    beneficiary_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    participant_present: Mapped[bool] = mapped_column(Boolean, nullable=False)
    nominal_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    nominal_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    forfeited_to: Mapped[PayoutRole | None] = mapped_column()

    # Relationships
    record: Mapped[CommissionRecord] = relationship(
        "CommissionRecord", back_populates="payouts", lazy="noload"
    )

    __table_args__ = (
        Index("ix_commission_payouts_record_id", "record_id"),
        Index("ix_commission_payouts_beneficiary_id", "beneficiary_id"),
    )
