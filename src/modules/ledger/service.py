"""Order ledger: creates orders and persists validated lifecycle transitions.

Every write is a version-checked conditional UPDATE, staged with its audit
row, outbox event and (on first entry into a success state) commission
record in the caller's session, so the whole change commits or none of it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager, selectinload

from src.config import settings
from src.exceptions import (
    ForbiddenException,
    IllegalTransitionException,
    InvalidStateException,
    NotFoundException,
    PersistenceConflictException,
    ValidationException,
)
from src.models.commission_record import CommissionPayout, CommissionRecord
from src.models.enums import ActorRole, OrderCategory, OrderEvent, OrderState, PayoutRole
from src.models.order import Order
from src.models.order_transition import OrderTransition
from src.modules.commission.engine import CommissionEngine, CommissionInput, Participants
from src.modules.commission.policy import CommissionPolicyTable, get_policy_table
from src.modules.commission.schemas import AgentEarningsResponse, CommissionPayoutResponse
from src.modules.events.outbox_service import OutboxService
from src.modules.lifecycle import state_machine
from src.modules.lifecycle.constants import (
    CLAIM_EVENTS,
    DELIVERY_LEG_EVENTS,
    DELIVERY_ROLE_BY_CATEGORY,
    EVENT_COMMISSION_FINALIZED,
    EVENT_ORDER_CANCELLED,
    EVENT_ORDER_CREATED,
    EVENT_ORDER_TRANSITIONED,
    SUCCESS_STATES,
)

logger = logging.getLogger(__name__)

# Events only the coordinator may fire, since they bind a role slot
_COORDINATOR_EVENTS = frozenset(CLAIM_EVENTS.values()) | {OrderEvent.RELEASE_CLAIM}

# Site-manager events that must come from the bound site manager
_SITE_EVENTS = frozenset({OrderEvent.MARK_READY_FOR_PICKUP, OrderEvent.BUYER_COLLECTED})


class OrderLedger:
    def __init__(
        self,
        db: AsyncSession,
        policy_table: CommissionPolicyTable | None = None,
    ):
        self.db = db
        self.policy_table = policy_table or get_policy_table()
        self.engine = CommissionEngine(self.policy_table)

    # ------------------------------------------------------------------
    # Reference number generation
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_order_number() -> str:
        """Generate ORD-YYYY-XXXXXXXX from a random UUID."""
        year = datetime.now(UTC).year
        return f"ORD-{year}-{uuid.uuid4().hex[:8].upper()}"

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_order(
        self,
        category: OrderCategory,
        purchase_price: Decimal,
        buyer_id: uuid.UUID,
        markup: Decimal | None = None,
        referral_source: uuid.UUID | None = None,
        territory: str | None = None,
        pickup_site: str | None = None,
        currency: str | None = None,
        site_manager_assisted: bool = False,
    ) -> Order:
        """Create a PENDING order with its selling price frozen."""
        if category == OrderCategory.PHYSICAL and not pickup_site:
            raise ValidationException("PHYSICAL orders need a pickup_site")
        if self.policy_table.policy_for(category) is None:
            raise ValidationException(
                f"No commission policy for category '{category.value}'"
            )

        markup = markup if markup is not None else self.policy_table.default_markup
        selling_price = self.engine.selling_price(purchase_price, markup)

        order = Order(
            order_number=self._generate_order_number(),
            category=category,
            state=OrderState.PENDING,
            version=1,
            purchase_price=purchase_price,
            markup=markup,
            selling_price=selling_price,
            currency=currency or settings.default_currency,
            buyer_id=buyer_id,
            referral_source=referral_source,
            territory=territory,
            pickup_site=pickup_site,
            site_manager_assisted=site_manager_assisted,
        )
        self.db.add(order)
        await self.db.flush()

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=EVENT_ORDER_CREATED,
            aggregate_type="order",
            aggregate_id=order.id,
            payload={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "category": category.value,
                "buyer_id": str(buyer_id),
                "selling_price": str(selling_price),
                "currency": order.currency,
            },
        )

        logger.info(
            "Created %s order %s (%s, selling price %s %s)",
            category.value, order.order_number, order.id, selling_price, order.currency,
        )
        return await self.get_order(order.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """Get an order with its commission record, payouts and transitions."""
        result = await self.db.execute(
            select(Order)
            .options(
                selectinload(Order.commission_record).selectinload(CommissionRecord.payouts),
                selectinload(Order.transitions),
            )
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundException(f"Order {order_id} not found")
        return order

    async def list_transitions(self, order_id: uuid.UUID) -> list[OrderTransition]:
        result = await self.db.execute(
            select(OrderTransition)
            .where(OrderTransition.order_id == order_id)
            .order_by(OrderTransition.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_agent_earnings(self, agent_id: uuid.UUID) -> list[CommissionPayout]:
        """Payout lines credited to an agent, newest record first."""
        result = await self.db.execute(
            select(CommissionPayout)
            .join(CommissionPayout.record)
            .options(contains_eager(CommissionPayout.record))
            .where(CommissionPayout.beneficiary_id == agent_id)
            .order_by(CommissionRecord.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def summarize_agent_earnings(
        self,
        agent_id: uuid.UUID,
        currency: str | None = None,
    ) -> AgentEarningsResponse:
        """Total of an agent's payout lines in one currency."""
        currency = currency or settings.default_currency
        payouts = [
            payout
            for payout in await self.list_agent_earnings(agent_id)
            if payout.record.currency == currency
        ]
        return AgentEarningsResponse(
            agent_id=agent_id,
            currency=currency,
            total=sum((payout.amount for payout in payouts), Decimal("0")),
            payouts=[CommissionPayoutResponse.model_validate(payout) for payout in payouts],
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def apply_transition(
        self,
        order_id: uuid.UUID,
        event: OrderEvent,
        acting_role: ActorRole,
        actor_id: uuid.UUID | None = None,
        reason: str | None = None,
    ) -> Order:
        """Validate and persist one lifecycle event.

        A replay of the event that produced the current state returns the
        order unchanged. Claim events are rejected here; they bind a slot
        and go through the claim coordinator.
        """
        order = await self._load(order_id)
        if event in _COORDINATOR_EVENTS:
            raise IllegalTransitionException(
                order.state.value,
                event.value,
                f"Event '{event.value}' binds a role slot; use the claim coordinator",
            )

        if state_machine.is_replay(order.category, order.state, event):
            logger.info(
                "Replayed '%s' on order %s ignored (already %s)",
                event.value, order_id, order.state.value,
            )
            return await self.get_order(order_id)

        try:
            target = state_machine.transition(order.category, order.state, event, acting_role)
        except IllegalTransitionException:
            logger.warning(
                "Rejected '%s' by %s on order %s in state %s",
                event.value, acting_role.value, order_id, order.state.value,
            )
            raise
        self._check_slot_holder(order, event, acting_role, actor_id)

        now = datetime.now(UTC)
        values: dict = {"state": target, "version": Order.version + 1}
        if target == OrderState.CANCELLED:
            values["cancelled_at"] = now
            values["cancellation_reason"] = reason
        elif target in SUCCESS_STATES:
            values["completed_at"] = now

        seen_state = order.state
        statement = (
            update(Order)
            .where(
                Order.id == order_id,
                Order.version == order.version,
                Order.state == seen_state,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(statement)

        if result.rowcount == 0:
            current = await self._load(order_id)
            if state_machine.is_replay(current.category, current.state, event):
                logger.info(
                    "Concurrent '%s' on order %s already applied", event.value, order_id
                )
                return await self.get_order(order_id)
            logger.warning(
                "Version conflict applying '%s' to order %s (saw v%s %s, now v%s %s)",
                event.value, order_id, order.version, seen_state.value,
                current.version, current.state.value,
            )
            raise PersistenceConflictException(
                f"Order {order_id} changed concurrently; re-read and retry",
                details=[{"order_id": str(order_id), "event": event.value}],
            )

        self.db.add(
            OrderTransition(
                order_id=order_id,
                from_state=seen_state,
                to_state=target,
                event=event,
                acting_role=acting_role,
                actor_id=actor_id,
                reason=reason,
            )
        )
        await self.db.flush()

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=(
                EVENT_ORDER_CANCELLED if target == OrderState.CANCELLED else EVENT_ORDER_TRANSITIONED
            ),
            aggregate_type="order",
            aggregate_id=order_id,
            payload={
                "order_id": str(order_id),
                "order_number": order.order_number,
                "event": event.value,
                "from_state": seen_state.value,
                "to_state": target.value,
                "acting_role": acting_role.value,
                "actor_id": str(actor_id) if actor_id else None,
                "reason": reason,
            },
        )

        if target in SUCCESS_STATES:
            await self._record_commission(await self._load(order_id))

        logger.info(
            "Order %s transitioned %s -> %s on '%s'",
            order_id, seen_state.value, target.value, event.value,
        )
        return await self.get_order(order_id)

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    async def finalize_commission(self, order_id: uuid.UUID) -> CommissionRecord:
        """Return the order's commission record, computing it if missing.

        Only orders in a success state have one. Concurrent finalizers
        converge on the first stored record through the UNIQUE order_id. The
        loser's insert runs in a savepoint, so only that insert is rolled
        back; the caller's other pending writes and its transaction survive.
        """
        existing = await self._get_commission(order_id)
        if existing is not None:
            return existing

        order = await self._load(order_id)
        if order.state not in SUCCESS_STATES:
            raise InvalidStateException(
                f"Order {order_id} is '{order.state.value}'; commission is only "
                "finalized for delivered or completed orders"
            )

        try:
            async with self.db.begin_nested():
                await self._record_commission(order)
        except IntegrityError:
            existing = await self._get_commission(order_id)
            if existing is None:
                raise
            logger.info("Commission for order %s finalized concurrently", order_id)
            return existing
        return await self._get_commission(order_id)

    async def _record_commission(self, order: Order) -> CommissionRecord:
        participants = Participants(
            delivery_agent_present=order.assigned_delivery_agent_id is not None,
            site_manager_present=order.assigned_site_manager_id is not None,
            referral_present=order.referral_source is not None,
            site_manager_assisted=order.site_manager_assisted,
        )
        payout = self.engine.distribute(
            CommissionInput(
                category=order.category,
                purchase_price=order.purchase_price,
                markup=order.markup,
                participants=participants,
            )
        )
        if payout.selling_price != order.selling_price:
            raise InvalidStateException(
                f"Order {order.id} was sold at {order.selling_price} but its stored "
                f"markup prices it at {payout.selling_price}",
                details=[
                    {
                        "order_id": str(order.id),
                        "selling_price": str(order.selling_price),
                        "computed_selling_price": str(payout.selling_price),
                    }
                ],
            )
        beneficiaries = {
            PayoutRole.DELIVERY_AGENT: order.assigned_delivery_agent_id,
            PayoutRole.SITE_MANAGER: order.assigned_site_manager_id,
            PayoutRole.REFERRAL: order.referral_source,
        }

        record = CommissionRecord(
            order_id=order.id,
            policy_name=payout.policy_name,
            currency=order.currency,
            purchase_price=payout.purchase_price,
            selling_price=payout.selling_price,
            platform_profit=payout.platform_profit,
            maintenance_fee=payout.maintenance_fee,
            platform_amount=payout.platform_amount,
            rounding_residue=payout.rounding_residue,
        )
        self.db.add(record)
        await self.db.flush()

        for line in payout.lines:
            self.db.add(
                CommissionPayout(
                    record_id=record.id,
                    role=line.role,
                    beneficiary_id=beneficiaries[line.role],
                    participant_present=line.participant_present,
                    nominal_rate=line.nominal_rate,
                    nominal_amount=line.nominal_amount,
                    amount=line.amount,
                    forfeited_to=line.forfeited_to,
                )
            )
        self.db.add(
            CommissionPayout(
                record_id=record.id,
                role=PayoutRole.PLATFORM,
                beneficiary_id=None,
                participant_present=True,
                nominal_rate=payout.platform_rate,
                nominal_amount=payout.platform_nominal,
                amount=payout.platform_amount,
            )
        )
        await self.db.flush()

        outbox = OutboxService(self.db)
        await outbox.publish_event(
            event_type=EVENT_COMMISSION_FINALIZED,
            aggregate_type="order",
            aggregate_id=order.id,
            payload={
                "order_id": str(order.id),
                "commission_record_id": str(record.id),
                "policy_name": payout.policy_name,
                "platform_profit": str(payout.platform_profit),
                "maintenance_fee": str(payout.maintenance_fee),
                "payouts": {
                    line.role.value: str(line.amount) for line in payout.lines
                } | {PayoutRole.PLATFORM.value: str(payout.platform_amount)},
                "currency": order.currency,
            },
        )

        logger.info(
            "Finalized commission for order %s: profit %s, platform %s, residue %s",
            order.id, payout.platform_profit, payout.platform_amount, payout.rounding_residue,
        )
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundException(f"Order {order_id} not found")
        return order

    async def _get_commission(self, order_id: uuid.UUID) -> CommissionRecord | None:
        result = await self.db.execute(
            select(CommissionRecord)
            .options(selectinload(CommissionRecord.payouts))
            .where(CommissionRecord.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _check_slot_holder(
        order: Order,
        event: OrderEvent,
        acting_role: ActorRole,
        actor_id: uuid.UUID | None,
    ) -> None:
        """Slot-bound events fired by an agent role must name the slot holder."""
        delivery_role = DELIVERY_ROLE_BY_CATEGORY[order.category]
        if event in DELIVERY_LEG_EVENTS or (
            event == OrderEvent.CONFIRM_DELIVERY and acting_role == delivery_role
        ):
            holder = order.assigned_delivery_agent_id
        elif event in _SITE_EVENTS and acting_role == ActorRole.PICKUP_SITE_MANAGER:
            holder = order.assigned_site_manager_id
        else:
            return
        if actor_id is None:
            raise ForbiddenException(
                f"'{event.value}' by {acting_role.value} on order {order.id} "
                "needs the acting agent's id"
            )
        if holder != actor_id:
            raise ForbiddenException(
                f"Agent {actor_id} does not hold the slot for '{event.value}' on order {order.id}"
            )
