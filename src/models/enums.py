import enum


class OrderCategory(str, enum.Enum):
    PHYSICAL = "PHYSICAL"
    LOCAL_MARKET = "LOCAL_MARKET"


class OrderState(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    ASSIGNED_TO_DELIVERY_AGENT = "ASSIGNED_TO_DELIVERY_AGENT"
    EN_ROUTE_TO_SELLER = "EN_ROUTE_TO_SELLER"
    AT_SELLER = "AT_SELLER"
    PICKED_UP = "PICKED_UP"
    EN_ROUTE_TO_SITE = "EN_ROUTE_TO_SITE"
    DEPOSITED_AT_SITE = "DEPOSITED_AT_SITE"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    EN_ROUTE_TO_BUYER = "EN_ROUTE_TO_BUYER"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OrderEvent(str, enum.Enum):
    CONFIRM_PAYMENT = "confirm_payment"
    AGENT_CLAIMED = "agent_claimed"
    DEPART_FOR_SELLER = "depart_for_seller"
    ARRIVE_AT_SELLER = "arrive_at_seller"
    CONFIRM_PICKUP = "confirm_pickup"
    DEPART_FOR_SITE = "depart_for_site"
    DEPOSIT_AT_SITE = "deposit_at_site"
    MARK_READY_FOR_PICKUP = "mark_ready_for_pickup"
    BUYER_COLLECTED = "buyer_collected"
    DEPART_FOR_BUYER = "depart_for_buyer"
    CONFIRM_DELIVERY = "confirm_delivery"
    CANCEL = "cancel"
    # Audit-only: explicit unbind of a stalled delivery claim
    RELEASE_CLAIM = "release_claim"


class ActorRole(str, enum.Enum):
    BUYER = "BUYER"
    SELLER = "SELLER"
    FAST_DELIVERY_AGENT = "FAST_DELIVERY_AGENT"
    PICKUP_DELIVERY_AGENT = "PICKUP_DELIVERY_AGENT"
    PICKUP_SITE_MANAGER = "PICKUP_SITE_MANAGER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class RoleSlot(str, enum.Enum):
    DELIVERY = "DELIVERY"
    SITE_MANAGER = "SITE_MANAGER"


class PayoutRole(str, enum.Enum):
    DELIVERY_AGENT = "DELIVERY_AGENT"
    SITE_MANAGER = "SITE_MANAGER"
    REFERRAL = "REFERRAL"
    PLATFORM = "PLATFORM"


class ClaimOutcome(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    INVALID_STATE = "INVALID_STATE"


class EventStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
