"""Claim coordinator: binds agents to order role slots, at most one per slot.

A claim is a single conditional UPDATE that sets the slot, the claim
timestamp, the next state and the row version together, guarded by
``slot IS NULL AND state = <observed state>``. Everything read before it is
advisory; the row count of that UPDATE decides the winner.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    PersistenceConflictException,
    ValidationException,
)
from src.models.agent import Agent
from src.models.enums import ActorRole, ClaimOutcome, OrderEvent, OrderState, RoleSlot
from src.models.order import Order
from src.models.order_transition import OrderTransition
from src.modules.claims.schemas import ClaimableOrder, ClaimResult
from src.modules.events.outbox_service import OutboxService
from src.modules.lifecycle import state_machine
from src.modules.lifecycle.constants import (
    ACTIVE_STATES,
    CATEGORIES_BY_ROLE,
    CLAIM_EVENTS,
    CLAIMABLE_STATES,
    EVENT_ORDER_CLAIM_RELEASED,
    EVENT_ORDER_CLAIMED,
    SLOT_BY_ROLE,
    TERMINAL_STATES,
)

logger = logging.getLogger(__name__)

# Slot -> (agent id column, claim timestamp column) on orders
_SLOT_COLUMNS = {
    RoleSlot.DELIVERY: (
        Order.assigned_delivery_agent_id,
        Order.delivery_agent_assigned_at,
    ),
    RoleSlot.SITE_MANAGER: (
        Order.assigned_site_manager_id,
        Order.site_manager_assigned_at,
    ),
}


def _holder(order: Order, slot: RoleSlot) -> uuid.UUID | None:
    if slot == RoleSlot.DELIVERY:
        return order.assigned_delivery_agent_id
    return order.assigned_site_manager_id


class ClaimCoordinator:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Browse
    # ------------------------------------------------------------------

    async def list_claimable(
        self,
        agent_role: ActorRole,
        territory: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ClaimableOrder]:
        """Unclaimed orders an agent of ``agent_role`` could claim.

        For delivery roles ``territory`` filters on the order's delivery
        territory; for site managers it filters on the pickup site. The
        result is a snapshot: a listed order may be gone by claim time.
        """
        slot = SLOT_BY_ROLE.get(agent_role)
        if slot is None:
            raise ValidationException(f"Role '{agent_role.value}' cannot claim orders")

        slot_column, _ = _SLOT_COLUMNS[slot]
        query = select(Order).where(
            Order.category.in_(CATEGORIES_BY_ROLE[agent_role]),
            Order.state.in_(CLAIMABLE_STATES[slot]),
            slot_column.is_(None),
        )
        if territory is not None:
            if slot == RoleSlot.SITE_MANAGER:
                query = query.where(Order.pickup_site == territory)
            else:
                query = query.where(Order.territory == territory)

        query = (
            query.order_by(Order.created_at.asc(), Order.order_number.asc())
            .offset(offset)
            .limit(limit or settings.claimable_page_size)
        )
        result = await self.db.execute(query)
        return [ClaimableOrder.model_validate(order) for order in result.scalars().all()]

    async def list_agent_orders(
        self,
        agent_id: uuid.UUID,
        active_only: bool = True,
    ) -> list[Order]:
        """Orders where the agent holds either role slot, newest first."""
        query = select(Order).where(
            or_(
                Order.assigned_delivery_agent_id == agent_id,
                Order.assigned_site_manager_id == agent_id,
            )
        )
        if active_only:
            query = query.where(Order.state.in_(ACTIVE_STATES))
        query = query.order_by(Order.created_at.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(self, order_id: uuid.UUID, agent_id: uuid.UUID) -> ClaimResult:
        """Bind ``agent_id`` to the order slot its role serves.

        Returns ACCEPTED, ALREADY_CLAIMED or INVALID_STATE. Eligibility
        problems (unknown or inactive agent, wrong category or site, agent
        at capacity) raise instead, since retrying cannot help.
        The agent row stays locked until the caller commits.
        """
        agent = await self._get_agent(agent_id)
        slot = SLOT_BY_ROLE.get(agent.role)
        if slot is None:
            raise ForbiddenException(f"Agents with role '{agent.role.value}' cannot claim orders")

        order = await self._get_order(order_id)
        self._check_eligibility(agent, slot, order)

        rejected = self._rejection(order, slot, agent_id)
        if rejected is not None:
            return rejected

        await self._check_capacity(agent, slot)

        event = CLAIM_EVENTS[slot]
        target = state_machine.transition(order.category, order.state, event, agent.role)
        seen_state = order.state
        slot_column, claimed_at_column = _SLOT_COLUMNS[slot]

        statement = (
            update(Order)
            .where(
                Order.id == order_id,
                slot_column.is_(None),
                Order.state == seen_state,
            )
            .values(
                {
                    slot_column: agent_id,
                    claimed_at_column: datetime.now(UTC),
                    Order.state: target,
                    Order.version: Order.version + 1,
                }
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(statement)

        if result.rowcount == 0:
            # Lost the race; explain it from a fresh read
            current = await self._get_order(order_id)
            rejected = self._rejection(current, slot, agent_id)
            if rejected is not None:
                logger.warning(
                    "Claim race on order %s lost by agent %s: %s",
                    order_id, agent_id, rejected.outcome.value,
                )
                return rejected
            raise PersistenceConflictException(
                f"Order {order_id} changed concurrently; retry the claim",
                details=[{"order_id": str(order_id), "seen_state": seen_state.value}],
            )

        self.db.add(
            OrderTransition(
                order_id=order_id,
                from_state=seen_state,
                to_state=target,
                event=event,
                acting_role=agent.role,
                actor_id=agent_id,
            )
        )
        await self.db.flush()

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=EVENT_ORDER_CLAIMED,
            aggregate_type="order",
            aggregate_id=order_id,
            payload={
                "order_id": str(order_id),
                "order_number": order.order_number,
                "agent_id": str(agent_id),
                "slot": slot.value,
                "from_state": seen_state.value,
                "to_state": target.value,
            },
        )

        order = await self._get_order(order_id)
        logger.info(
            "Agent %s claimed %s slot of order %s (%s -> %s)",
            agent_id, slot.value, order_id, seen_state.value, target.value,
        )
        return ClaimResult(
            outcome=ClaimOutcome.ACCEPTED,
            order_id=order_id,
            agent_id=agent_id,
            slot=slot,
            state=order.state,
            version=order.version,
            holder_id=agent_id,
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_claim(
        self,
        order_id: uuid.UUID,
        reason: str,
        actor_id: uuid.UUID | None = None,
        acting_role: ActorRole = ActorRole.SYSTEM,
    ) -> Order:
        """Unbind a stalled delivery claim and return the order to PROCESSING.

        Only allowed before pickup. Guarded by the current holder and row
        version, so a release never clears a binding it did not observe.
        """
        order = await self._get_order(order_id)
        holder = order.assigned_delivery_agent_id
        if holder is None:
            raise InvalidStateException(f"Order {order_id} has no delivery claim to release")

        target = state_machine.release_target(order.category, order.state)
        statement = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.version == order.version,
                Order.assigned_delivery_agent_id == holder,
            )
            .values(
                assigned_delivery_agent_id=None,
                delivery_agent_assigned_at=None,
                state=target,
                version=Order.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(statement)
        if result.rowcount == 0:
            raise PersistenceConflictException(
                f"Order {order_id} changed concurrently; release not applied"
            )

        self.db.add(
            OrderTransition(
                order_id=order_id,
                from_state=order.state,
                to_state=target,
                event=OrderEvent.RELEASE_CLAIM,
                acting_role=acting_role,
                actor_id=actor_id,
                reason=reason,
            )
        )
        await self.db.flush()

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=EVENT_ORDER_CLAIM_RELEASED,
            aggregate_type="order",
            aggregate_id=order_id,
            payload={
                "order_id": str(order_id),
                "released_agent_id": str(holder),
                "from_state": order.state.value,
                "to_state": target.value,
                "reason": reason,
            },
        )

        logger.info(
            "Released delivery claim of agent %s on order %s (%s)",
            holder, order_id, reason,
        )
        return await self._get_order(order_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_agent(self, agent_id: uuid.UUID) -> Agent:
        # Row lock held until commit: one agent's claims run one at a time, so
        # the capacity count cannot be raced past the limit
        result = await self.db.execute(
            select(Agent).where(Agent.id == agent_id).with_for_update()
        )
        agent = result.scalar_one_or_none()
        if agent is None:
            raise NotFoundException(f"Agent {agent_id} not found")
        return agent

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        # populate_existing: conditional UPDATEs bypass the identity map
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundException(f"Order {order_id} not found")
        return order

    @staticmethod
    def _check_eligibility(agent: Agent, slot: RoleSlot, order: Order) -> None:
        if not agent.is_active:
            raise ForbiddenException(f"Agent {agent.id} is not active")
        if order.category not in CATEGORIES_BY_ROLE[agent.role]:
            raise ForbiddenException(
                f"Role '{agent.role.value}' cannot serve {order.category.value} orders"
            )
        if slot == RoleSlot.SITE_MANAGER and order.pickup_site != agent.territory:
            raise ForbiddenException(
                f"Order {order.id} is routed to pickup site '{order.pickup_site}', "
                f"not '{agent.territory}'"
            )

    @staticmethod
    def _rejection(
        order: Order, slot: RoleSlot, agent_id: uuid.UUID
    ) -> ClaimResult | None:
        """Outcome for an order that cannot be claimed now, else None.

        A repeat claim by the current holder is reported as ACCEPTED without
        writing anything.
        """
        holder = _holder(order, slot)

        def result(outcome: ClaimOutcome, message: str | None = None) -> ClaimResult:
            return ClaimResult(
                outcome=outcome,
                order_id=order.id,
                agent_id=agent_id,
                slot=slot,
                state=order.state,
                version=order.version,
                holder_id=holder,
                message=message,
            )

        if order.state in TERMINAL_STATES:
            return result(
                ClaimOutcome.INVALID_STATE,
                f"Order is in terminal state '{order.state.value}'",
            )
        if holder is not None:
            if holder == agent_id:
                return result(ClaimOutcome.ACCEPTED, "Agent already holds this slot")
            return result(ClaimOutcome.ALREADY_CLAIMED, "Slot is held by another agent")
        if order.state not in CLAIMABLE_STATES[slot]:
            return result(
                ClaimOutcome.INVALID_STATE,
                f"{slot.value} slot cannot be claimed in state '{order.state.value}'",
            )
        return None

    async def _check_capacity(self, agent: Agent, slot: RoleSlot) -> None:
        if slot != RoleSlot.DELIVERY:
            return
        limit = agent.max_active_orders or settings.max_active_orders_per_agent
        result = await self.db.execute(
            select(func.count())
            .select_from(Order)
            .where(
                Order.assigned_delivery_agent_id == agent.id,
                Order.state.in_(ACTIVE_STATES),
            )
        )
        active = result.scalar() or 0
        if active >= limit:
            raise BusinessRuleException(
                f"Agent {agent.id} already has {active} active orders (limit {limit})",
                details=[{"agent_id": str(agent.id), "active": active, "limit": limit}],
            )
