"""Agent model: delivery agents and pickup-site managers eligible to claim orders."""

from __future__ import annotations

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import ActorRole


class Agent(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "agents"

    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[ActorRole] = mapped_column(nullable=False)
    # Delivery territory for delivery agents, pickup-site code for site managers
    territory: Mapped[str | None] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Overrides settings.max_active_orders_per_agent when set
    max_active_orders: Mapped[int | None] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<Agent id={self.id} role={self.role} territory={self.territory}>"
