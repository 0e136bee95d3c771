"""CommissionEngine: exact, conservative split of an order's platform profit.

The engine is pure: it reads nothing but its inputs and the injected policy
table, and identical inputs always produce identical records. Amounts are
``Decimal`` quantized to the currency minor unit. The maintenance fee comes
off the profit first; role shares of the remainder are rounded down and the
platform line absorbs the fee, forfeited shares and the rounding residue, so
the lines always sum to the platform profit exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from src.config import settings
from src.exceptions import InvalidCommissionInputException
from src.models.enums import OrderCategory, PayoutRole
from src.modules.commission.constants import MARKUP_QUANTUM
from src.modules.commission.policy import SHARE_ROLES, CommissionPolicyTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Participants:
    delivery_agent_present: bool
    site_manager_present: bool
    referral_present: bool
    # Site manager helped the buyer with the purchase
    site_manager_assisted: bool = False

    def present_roles(self) -> set[PayoutRole]:
        flags = {
            PayoutRole.DELIVERY_AGENT: self.delivery_agent_present,
            PayoutRole.SITE_MANAGER: self.site_manager_present,
            PayoutRole.REFERRAL: self.referral_present,
        }
        return {role for role, present in flags.items() if present}


@dataclass(frozen=True)
class CommissionInput:
    category: OrderCategory
    purchase_price: Decimal
    markup: Decimal
    participants: Participants


@dataclass(frozen=True)
class PayoutLine:
    role: PayoutRole
    participant_present: bool
    nominal_rate: Decimal
    nominal_amount: Decimal
    # What this role is actually paid: own share if present, plus absorbed shares
    amount: Decimal
    forfeited_to: PayoutRole | None = None


@dataclass(frozen=True)
class PayoutRecord:
    category: OrderCategory
    policy_name: str
    purchase_price: Decimal
    selling_price: Decimal
    platform_profit: Decimal
    maintenance_fee_rate: Decimal
    maintenance_fee: Decimal
    # Profit left for role shares once the maintenance fee is taken
    distributable_profit: Decimal
    lines: tuple[PayoutLine, ...]
    platform_rate: Decimal
    platform_nominal: Decimal
    # Maintenance fee + platform nominal share + shares forfeited to PLATFORM
    # + rounding_residue
    platform_amount: Decimal
    rounding_residue: Decimal

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), self.platform_amount)

    def amount_for(self, role: PayoutRole) -> Decimal:
        if role == PayoutRole.PLATFORM:
            return self.platform_amount
        for line in self.lines:
            if line.role == role:
                return line.amount
        return Decimal("0")


class CommissionEngine:
    """Distributes platform profit according to a policy table."""

    def __init__(
        self,
        policy_table: CommissionPolicyTable,
        quantum: Decimal | None = None,
    ) -> None:
        self.policy_table = policy_table
        self.quantum = quantum if quantum is not None else settings.currency_quantum

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def selling_price(self, purchase_price: Decimal, markup: Decimal) -> Decimal:
        """Purchase price plus markup, rounded half-up to the minor unit."""
        purchase_price = self._validate_money(purchase_price)
        markup = self._validate_markup(markup)
        return (purchase_price * (1 + markup)).quantize(self.quantum, rounding=ROUND_HALF_UP)

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def distribute(self, data: CommissionInput) -> PayoutRecord:
        """Split the platform profit of one order into itemized payouts."""
        if not isinstance(data, CommissionInput):
            raise InvalidCommissionInputException("Commission input is malformed")

        policy = self.policy_table.policy_for(data.category)
        if policy is None:
            raise InvalidCommissionInputException(
                f"No commission policy for category '{data.category.value}'"
            )
        present = self._validate_participants(data.participants)

        selling_price = self.selling_price(data.purchase_price, data.markup)
        profit = selling_price - data.purchase_price
        maintenance_fee = self._share(profit, policy.maintenance_fee_rate)
        assisted = (
            data.participants.site_manager_assisted and PayoutRole.SITE_MANAGER in present
        )
        distributable = profit - maintenance_fee

        rates: dict[PayoutRole, Decimal] = {
            role: policy.rate_for(role, assisted) for role in SHARE_ROLES
        }
        nominal: dict[PayoutRole, Decimal] = {
            role: self._share(distributable, rates[role]) for role in SHARE_ROLES
        }
        platform_rate = 1 - sum(rates.values())
        platform_nominal = self._share(distributable, platform_rate)
        residue = distributable - platform_nominal - sum(nominal.values(), Decimal("0"))

        paid: dict[PayoutRole, Decimal] = {
            role: (nominal[role] if role in present else Decimal("0")) for role in SHARE_ROLES
        }
        forfeited_to: dict[PayoutRole, PayoutRole] = {}
        for role in SHARE_ROLES:
            if role in present:
                continue
            beneficiary = policy.beneficiary_for(role, present)
            forfeited_to[role] = beneficiary
            if beneficiary != PayoutRole.PLATFORM:
                paid[beneficiary] += nominal[role]

        lines = tuple(
            PayoutLine(
                role=role,
                participant_present=role in present,
                nominal_rate=rates[role],
                nominal_amount=nominal[role],
                amount=paid[role],
                forfeited_to=forfeited_to.get(role),
            )
            for role in SHARE_ROLES
        )
        # Remainder keeps the record exact to the minor unit
        platform_amount = profit - sum(paid.values(), Decimal("0"))

        logger.debug(
            "Distributed %s profit %s (fee %s): %s, platform %s (residue %s)",
            data.category.value,
            profit,
            maintenance_fee,
            {line.role.value: str(line.amount) for line in lines},
            platform_amount,
            residue,
        )
        return PayoutRecord(
            category=data.category,
            policy_name=self.policy_table.name,
            purchase_price=data.purchase_price,
            selling_price=selling_price,
            platform_profit=profit,
            maintenance_fee_rate=policy.maintenance_fee_rate,
            maintenance_fee=maintenance_fee,
            distributable_profit=distributable,
            lines=lines,
            platform_rate=platform_rate,
            platform_nominal=platform_nominal,
            platform_amount=platform_amount,
            rounding_residue=residue,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _share(self, profit: Decimal, rate: Decimal) -> Decimal:
        return (profit * rate).quantize(self.quantum, rounding=ROUND_DOWN)

    def _validate_money(self, value) -> Decimal:
        if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
            raise InvalidCommissionInputException(
                f"purchase_price must be an exact Decimal amount (got {type(value).__name__})"
            )
        value = Decimal(value)
        if not value.is_finite() or value <= 0:
            raise InvalidCommissionInputException(
                f"purchase_price must be a positive amount (got {value})"
            )
        if value != value.quantize(self.quantum):
            raise InvalidCommissionInputException(
                f"purchase_price {value} is finer than the currency minor unit {self.quantum}"
            )
        return value

    @staticmethod
    def _validate_markup(value) -> Decimal:
        if isinstance(value, bool) or not isinstance(value, (Decimal, int)):
            raise InvalidCommissionInputException(
                f"markup must be an exact Decimal rate (got {type(value).__name__})"
            )
        value = Decimal(value)
        if not value.is_finite() or value < 0:
            raise InvalidCommissionInputException(
                f"markup must be a non-negative rate (got {value})"
            )
        if value != value.quantize(MARKUP_QUANTUM):
            raise InvalidCommissionInputException(
                f"markup {value} is finer than {MARKUP_QUANTUM}"
            )
        return value

    @staticmethod
    def _validate_participants(participants) -> set[PayoutRole]:
        if not isinstance(participants, Participants):
            raise InvalidCommissionInputException("participants must be a Participants set")
        flags = (
            participants.delivery_agent_present,
            participants.site_manager_present,
            participants.referral_present,
            participants.site_manager_assisted,
        )
        if not all(isinstance(flag, bool) for flag in flags):
            raise InvalidCommissionInputException(
                "participant presence flags must be booleans"
            )
        return participants.present_roles()
