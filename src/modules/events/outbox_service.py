"""OutboxService: records domain events in the caller's transaction.

Rows are written next to the state change they describe, so an event exists
if and only if its change committed. Delivery to consumers is a relay's job;
this service only publishes rows and tracks their dispatch status.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.enums import EventStatus
from src.models.event_outbox import EventOutbox

logger = logging.getLogger(__name__)


class OutboxService:
    """Publishes outbox events and tracks their relay status."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def publish_event(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: uuid.UUID | str,
        payload: dict,
        schema_version: int = 1,
    ) -> EventOutbox:
        """Stage a PENDING event; committed with the caller's unit of work."""
        event = EventOutbox(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=str(aggregate_id),
            payload=payload,
            status=EventStatus.PENDING,
            schema_version=schema_version,
        )
        self.session.add(event)
        await self.session.flush()
        logger.debug("Staged %s event for %s %s", event_type, aggregate_type, aggregate_id)
        return event

    async def list_events(
        self, aggregate_type: str, aggregate_id: uuid.UUID | str
    ) -> list[EventOutbox]:
        """All events for one aggregate, oldest first."""
        statement = (
            select(EventOutbox)
            .where(
                EventOutbox.aggregate_type == aggregate_type,
                EventOutbox.aggregate_id == str(aggregate_id),
            )
            .order_by(EventOutbox.created_at.asc())
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def get_pending_events(self, batch_size: int = 50) -> list[EventOutbox]:
        """Pending events ordered by created_at, limited to batch_size."""
        statement = (
            select(EventOutbox)
            .where(EventOutbox.status == EventStatus.PENDING)
            .order_by(EventOutbox.created_at.asc())
            .limit(batch_size)
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def mark_completed(self, event_id: uuid.UUID) -> None:
        statement = (
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .values(
                status=EventStatus.COMPLETED,
                processed_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(statement)

    async def mark_failed(self, event_id: uuid.UUID, error: str) -> EventStatus:
        """Record a failed relay attempt.

        The event goes back to PENDING until ``max_retries`` attempts have
        failed, then it is parked as FAILED. Returns the new status.
        """
        result = await self.session.execute(
            select(EventOutbox).where(EventOutbox.id == event_id)
        )
        event = result.scalar_one()

        retry_count = event.retry_count + 1
        status = (
            EventStatus.FAILED if retry_count >= event.max_retries else EventStatus.PENDING
        )
        event.retry_count = retry_count
        event.last_error = error
        event.status = status
        await self.session.flush()

        if status == EventStatus.FAILED:
            logger.warning(
                "Outbox event %s (%s) failed permanently after %d attempts: %s",
                event_id, event.event_type, retry_count, error,
            )
        return status
