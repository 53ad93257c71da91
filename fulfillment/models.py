"""Print order, credit ledger and webhook record data models.

Orders are persisted as a JSON blob keyed by order id with a few
indexed columns alongside (status, provider job id, payment session).
Timestamps are epoch seconds.
"""

from __future__ import annotations

import random
import string
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class OrderStatus(str, Enum):
    """Print order lifecycle states."""

    CREATED = "created"
    PAID = "paid"
    PRINTING = "printing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.REJECTED, OrderStatus.CANCELLED}
)


class ShippingLevel(str, Enum):
    MAIL = "MAIL"
    PRIORITY_MAIL = "PRIORITY_MAIL"
    GROUND = "GROUND"
    EXPEDITED = "EXPEDITED"
    EXPRESS = "EXPRESS"


class SubmissionStatus(str, Enum):
    """Print provider submission progress for a paid order."""

    PENDING = "pending"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    FAILED = "failed"


class CreditReason(str, Enum):
    PURCHASE = "purchase"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class NotificationCategory(str, Enum):
    """User-facing email categories for order status changes."""

    IN_PRODUCTION = "in_production"
    SHIPPED = "shipped"
    REJECTED = "rejected"
    CANCELED = "canceled"
    STATUS_UPDATE = "status_update"


class EventOutcome(str, Enum):
    """What processing a webhook event did."""

    APPLIED = "applied"
    NOOP = "noop"
    UNKNOWN_ORDER = "unknown_order"
    IGNORED = "ignored"


@dataclass
class ShippingAddress:
    name: str = ""
    street1: str = ""
    street2: str = ""
    city: str = ""
    state_code: str = ""
    postcode: str = ""
    country_code: str = ""
    phone_number: str = ""
    email: str = ""

    def formatted(self) -> str:
        """Multi-line address for emails."""
        lines = [self.name, self.street1]
        if self.street2:
            lines.append(self.street2)
        region = " ".join(p for p in (self.city, self.state_code, self.postcode) if p)
        lines.append(region)
        lines.append(self.country_code)
        return "\n".join(line for line in lines if line)


@dataclass
class CostBreakdown:
    manufacturing_cost: float = 0.0
    shipping_cost: float = 0.0
    total_cost: float = 0.0
    currency: str = "USD"
    total_cost_credits: int = 0


@dataclass
class TrackingInfo:
    tracking_id: str | None = None
    carrier_name: str | None = None
    tracking_urls: list[str] = field(default_factory=list)


@dataclass
class PrintOrder:
    """A single manufacturing request for a generated book."""

    order_id: str = ""
    user_id: str = ""
    book_id: str = ""
    book_title: str = ""
    external_id: str = ""
    quantity: int = 1
    shipping_address: ShippingAddress = field(default_factory=ShippingAddress)
    shipping_level: ShippingLevel = ShippingLevel.MAIL
    cost: CostBreakdown = field(default_factory=CostBreakdown)

    # Lifecycle
    status: OrderStatus = OrderStatus.CREATED
    provider_status: str = ""  # raw status name last reported by the printer
    tracking: TrackingInfo = field(default_factory=TrackingInfo)

    # Provider references
    provider_job_id: str | None = None
    payment_session_id: str | None = None
    payment_intent_id: str | None = None
    cover_pdf_url: str = ""
    interior_pdf_url: str = ""

    # Submission / error metadata
    submission_status: SubmissionStatus = SubmissionStatus.PENDING
    submission_attempts: int = 0
    last_error: str | None = None
    retry_count: int = 0

    # Compensation marker
    refund_transaction_id: str | None = None
    refunded_at: float | None = None

    created_at: float = 0.0
    updated_at: float = 0.0
    ordered_at: float | None = None
    shipped_at: float | None = None

    @property
    def is_refunded(self) -> bool:
        return self.refund_transaction_id is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> PrintOrder:
        data = {k: v for k, v in d.items() if k in PrintOrder.__dataclass_fields__}
        if isinstance(data.get("shipping_address"), dict):
            data["shipping_address"] = ShippingAddress(**data["shipping_address"])
        if isinstance(data.get("cost"), dict):
            data["cost"] = CostBreakdown(**data["cost"])
        if isinstance(data.get("tracking"), dict):
            data["tracking"] = TrackingInfo(**data["tracking"])
        if "status" in data:
            data["status"] = OrderStatus(data["status"])
        if "shipping_level" in data:
            data["shipping_level"] = ShippingLevel(data["shipping_level"])
        if "submission_status" in data:
            data["submission_status"] = SubmissionStatus(data["submission_status"])
        return PrintOrder(**data)

    @staticmethod
    def new_id() -> str:
        return f"po_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def new_external_id() -> str:
        """Human-facing order reference, e.g. ``PTO_1718000000000_X7K2QA``."""
        suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
        return f"PTO_{int(time.time() * 1000)}_{suffix}"


def create_order(**kwargs: Any) -> PrintOrder:
    """Build a new order in ``created`` status with ids and timestamps set."""
    now = time.time()
    order = PrintOrder(**kwargs)
    order.order_id = order.order_id or PrintOrder.new_id()
    order.external_id = order.external_id or PrintOrder.new_external_id()
    order.status = OrderStatus.CREATED
    order.created_at = order.created_at or now
    order.updated_at = now
    return order


@dataclass(frozen=True)
class CreditTransaction:
    """Immutable credit ledger entry. Positive amounts add credits."""

    user_id: str
    amount: int
    reason: CreditReason
    description: str = ""
    correlation_id: str | None = None  # e.g. "order:po_x" or a payment intent id
    transaction_id: str = field(default_factory=lambda: f"ctx_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def order_correlation_id(order_id: str) -> str:
    """Correlation id tying refund entries to one order."""
    return f"order:{order_id}"


@dataclass
class User:
    """The slice of the user record this engine reads."""

    user_id: str
    email: str
    first_name: str = ""
    preferred_language: str = "en"
    credits_balance: int = 0  # cached projection of the credit ledger


@dataclass(frozen=True)
class WebhookEventRecord:
    """Idempotency ledger entry, one per processed provider event."""

    provider: str
    provider_event_id: str
    outcome: EventOutcome
    order_id: str | None = None
    first_seen_at: float = field(default_factory=time.time)
