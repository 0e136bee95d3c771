"""Bundled default commission policy.

Shares are fractions of the platform profit (selling price minus purchase
price) left after the maintenance fee. Roles left out of ``forfeiture``
forfeit to the platform. The bundled table charges no maintenance fee and
has no assisted site-manager rate.
"""

from __future__ import annotations

from decimal import Decimal

# Finest markup an order can store
MARKUP_QUANTUM = Decimal("0.0001")

DEFAULT_POLICY_NAME = "default-2025"

DEFAULT_POLICY_TABLE: dict = {
    "name": DEFAULT_POLICY_NAME,
    "default_markup": "0.21",
    "categories": {
        "PHYSICAL": {
            "delivery_agent_rate": "0.70",
            "site_manager_rate": "0.15",
            "referral_rate": "0.15",
            "forfeiture": {},
        },
        "LOCAL_MARKET": {
            "delivery_agent_rate": "0.50",
            "site_manager_rate": "0.15",
            "referral_rate": "0.15",
            "forfeiture": {},
        },
    },
}
