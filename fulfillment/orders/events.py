"""Canonical order events produced by the webhook parsers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fulfillment.models import TrackingInfo


class EventKind(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    PRINT_JOB_STATUS = "print_job_status"
    CREDIT_PURCHASE = "credit_purchase"
    IGNORED = "ignored"  # verified and well-formed, but nothing to do


class PrintStatus(str, Enum):
    """Closed set of print provider statuses the engine acts on."""

    IN_PRODUCTION = "in_production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @classmethod
    def from_name(cls, name: str) -> PrintStatus:
        normalized = (name or "").strip().lower()
        if normalized == "cancelled":
            normalized = "canceled"
        try:
            status = cls(normalized)
        except ValueError:
            return cls.UNKNOWN
        return status


@dataclass(frozen=True)
class PaymentConfirmation:
    """Checkout session details returned by the payment provider."""

    session_id: str
    payment_status: str
    payment_intent_id: str | None = None
    amount_total: int = 0
    currency: str = "usd"
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class OrderEvent:
    """A verified, parsed webhook event."""

    provider: str
    event_id: str
    kind: EventKind
    topic: str
    object_id: str = ""  # checkout session id or print job id
    status_name: str = ""  # raw provider status, lower-cased
    status_message: str | None = None
    tracking: TrackingInfo | None = None
    payment: PaymentConfirmation | None = None

    @property
    def print_status(self) -> PrintStatus:
        return PrintStatus.from_name(self.status_name)
