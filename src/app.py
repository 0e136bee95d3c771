"""Process bootstrap for hosts embedding the fulfillment core."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from src.config import settings
from src.database.engine import engine
from src.exceptions import AppException
from src.modules.commission.policy import CommissionPolicyTable, get_policy_table

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a root handler at ``settings.log_level`` unless one exists."""
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel((level or settings.log_level).upper())


def error_payload(exc: AppException, request_id: str | None = None) -> dict:
    """Structured error body for an AppException, ready to serialize."""
    return {
        "error": {
            "code": exc.code,
            "message": exc.message,
            "details": exc.details,
            "requestId": request_id or "unknown",
        }
    }


@asynccontextmanager
async def lifespan() -> AsyncIterator[CommissionPolicyTable]:
    """Load configuration up front; dispose the async engine on shutdown.

    A broken commission policy file fails here rather than on the first
    finalized order.
    """
    configure_logging()
    policy_table = get_policy_table()
    logger.info(
        "Fulfillment core starting (%s): policy '%s', currency %s",
        settings.environment, policy_table.name, settings.default_currency,
    )
    try:
        yield policy_table
    finally:
        await engine.dispose()
