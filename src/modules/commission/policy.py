"""Commission policy table: validated, swappable percentage data per category."""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from src.config import settings
from src.exceptions import ValidationException
from src.models.enums import OrderCategory, PayoutRole
from src.modules.commission.constants import DEFAULT_POLICY_TABLE

logger = logging.getLogger(__name__)

# Roles that can be paid (or forfeit) a share; the platform takes the rest
SHARE_ROLES: tuple[PayoutRole, ...] = (
    PayoutRole.DELIVERY_AGENT,
    PayoutRole.SITE_MANAGER,
    PayoutRole.REFERRAL,
)


class CategoryPolicy(BaseModel):
    """Nominal shares for one order category plus its forfeiture routing."""

    model_config = ConfigDict(frozen=True)

    delivery_agent_rate: Decimal = Field(..., ge=0, le=1)
    site_manager_rate: Decimal = Field(..., ge=0, le=1)
    referral_rate: Decimal = Field(..., ge=0, le=1)
    # Site-manager share when the manager helped the buyer with the purchase
    site_manager_assisted_rate: Decimal | None = Field(None, ge=0, le=1)
    # Fraction of the profit the platform keeps before role shares are taken
    maintenance_fee_rate: Decimal = Field(Decimal("0"), ge=0, lt=1)
    # Absent role -> who receives its share; unlisted roles go to PLATFORM
    forfeiture: dict[PayoutRole, PayoutRole] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_shares(self) -> CategoryPolicy:
        site_manager_rate = max(
            self.site_manager_rate, self.site_manager_assisted_rate or Decimal("0")
        )
        total = self.delivery_agent_rate + site_manager_rate + self.referral_rate
        if total > 1:
            raise ValueError(f"Role shares must not exceed 1.0 (got {total})")

        for source, target in self.forfeiture.items():
            if source == PayoutRole.PLATFORM:
                raise ValueError("PLATFORM cannot forfeit its share")
            if source == target:
                raise ValueError(f"{source.value} cannot forfeit to itself")

        # Every chain must end at PLATFORM
        for source in self.forfeiture:
            seen = {source}
            current = self.forfeiture[source]
            while current != PayoutRole.PLATFORM:
                if current in seen:
                    raise ValueError(
                        f"Forfeiture rules form a cycle through {current.value}"
                    )
                seen.add(current)
                current = self.forfeiture.get(current, PayoutRole.PLATFORM)
        return self

    def rate_for(self, role: PayoutRole, site_manager_assisted: bool = False) -> Decimal:
        if (
            role == PayoutRole.SITE_MANAGER
            and site_manager_assisted
            and self.site_manager_assisted_rate is not None
        ):
            return self.site_manager_assisted_rate
        return {
            PayoutRole.DELIVERY_AGENT: self.delivery_agent_rate,
            PayoutRole.SITE_MANAGER: self.site_manager_rate,
            PayoutRole.REFERRAL: self.referral_rate,
        }[role]

    def beneficiary_for(self, role: PayoutRole, present: set[PayoutRole]) -> PayoutRole:
        """Follow the forfeiture chain from an absent ``role`` to a present one."""
        target = self.forfeiture.get(role, PayoutRole.PLATFORM)
        while target != PayoutRole.PLATFORM and target not in present:
            target = self.forfeiture.get(target, PayoutRole.PLATFORM)
        return target


class CommissionPolicyTable(BaseModel):
    """All category policies in force, loaded once at startup."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100)
    default_markup: Decimal = Field(..., ge=0)
    categories: dict[OrderCategory, CategoryPolicy]

    def policy_for(self, category: OrderCategory) -> CategoryPolicy | None:
        return self.categories.get(category)


def load_policy_table(path: str | Path) -> CommissionPolicyTable:
    """Read and validate a policy table from a JSON file."""
    raw = Path(path).read_text(encoding="utf-8")
    try:
        table = CommissionPolicyTable.model_validate_json(raw)
    except ValidationError as exc:
        raise ValidationException(
            f"Invalid commission policy file '{path}'",
            details=[
                {"field": ".".join(str(loc) for loc in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc
    logger.info("Loaded commission policy '%s' from %s", table.name, path)
    return table


def default_policy_table() -> CommissionPolicyTable:
    """Bundled policy with the markup configured in settings."""
    return CommissionPolicyTable.model_validate(
        {**DEFAULT_POLICY_TABLE, "default_markup": settings.default_markup}
    )


@lru_cache(maxsize=1)
def get_policy_table() -> CommissionPolicyTable:
    """Policy table named by settings, or the bundled default."""
    if settings.commission_policy_path:
        return load_policy_table(settings.commission_policy_path)
    return default_policy_table()
