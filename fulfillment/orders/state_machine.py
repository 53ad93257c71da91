"""Order State Machine — pure transition function.

    created -> paid -> printing -> shipped -> delivered
                 \\         \\
                  +---------+--> rejected | cancelled

``transition(order, event)`` never performs I/O. It returns the new
status, the field changes to persist and the side effects the caller
must run after the write commits, in order.

Outcomes:
- APPLIED: write ``changes`` (conditional on ``from_status``), then run effects
- RESUME: nothing to write, but effects from an earlier delivery that
  did not finish (submission, refund) are still owed
- NOOP: order already reflects this event
- IGNORED: event is stale or irrelevant for the current status
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from fulfillment.models import NotificationCategory, OrderStatus, PrintOrder, TrackingInfo
from fulfillment.orders.events import EventKind, OrderEvent, PrintStatus


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    RESUME = "resume"
    NOOP = "noop"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SubmitPrintJob:
    """Send the paid order to the print provider and store its job id."""


@dataclass(frozen=True)
class IssueRefund:
    reason: str


@dataclass(frozen=True)
class SendNotification:
    category: NotificationCategory
    message: str | None = None


Effect = Union[SubmitPrintJob, IssueRefund, SendNotification]


@dataclass(frozen=True)
class Transition:
    outcome: TransitionOutcome
    from_status: OrderStatus
    to_status: OrderStatus
    changes: dict[str, Any] = field(default_factory=dict)
    effects: tuple[Effect, ...] = ()
    note: str = ""

    @property
    def requires_write(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


# Statuses from which the printer may still move an order forward
_IN_FLIGHT = frozenset({OrderStatus.PAID, OrderStatus.PRINTING})

_TERMINAL_FOR = {
    PrintStatus.REJECTED: OrderStatus.REJECTED,
    PrintStatus.CANCELED: OrderStatus.CANCELLED,
    PrintStatus.DELIVERED: OrderStatus.DELIVERED,
}

_REFUND_CATEGORY = {
    OrderStatus.REJECTED: NotificationCategory.REJECTED,
    OrderStatus.CANCELLED: NotificationCategory.CANCELED,
}


def _stay(order: PrintOrder, outcome: TransitionOutcome, note: str) -> Transition:
    return Transition(outcome, order.status, order.status, note=note)


def refund_reason(status: OrderStatus, message: str | None) -> str:
    label = "rejected" if status is OrderStatus.REJECTED else "canceled"
    return f"Order {label}: {message or 'Unknown reason'}"


def transition(order: PrintOrder, event: OrderEvent, now: float | None = None) -> Transition:
    """Compute the effect of ``event`` on ``order``."""
    now = time.time() if now is None else now
    if event.kind is EventKind.PAYMENT_CONFIRMED:
        return _on_payment(order, event, now)
    if event.kind is EventKind.PRINT_JOB_STATUS:
        return _on_print_status(order, event, now)
    return _stay(order, TransitionOutcome.IGNORED, f"event kind {event.kind.value} has no order transition")


def _on_payment(order: PrintOrder, event: OrderEvent, now: float) -> Transition:
    if order.status is OrderStatus.CREATED:
        changes: dict[str, Any] = {"status": OrderStatus.PAID, "ordered_at": now}
        if event.payment is not None:
            changes["payment_session_id"] = event.payment.session_id
            if event.payment.payment_intent_id:
                changes["payment_intent_id"] = event.payment.payment_intent_id
        return Transition(
            TransitionOutcome.APPLIED,
            OrderStatus.CREATED,
            OrderStatus.PAID,
            changes,
            (SubmitPrintJob(),),
        )
    if order.status is OrderStatus.PAID and order.provider_job_id is None:
        return Transition(
            TransitionOutcome.RESUME,
            OrderStatus.PAID,
            OrderStatus.PAID,
            effects=(SubmitPrintJob(),),
            note="print job submission still pending",
        )
    return _stay(order, TransitionOutcome.NOOP, "payment already confirmed")


def _on_print_status(order: PrintOrder, event: OrderEvent, now: float) -> Transition:
    status = event.print_status
    current = order.status

    if current.is_terminal:
        return _on_terminal(order, status, event)

    if current is OrderStatus.CREATED:
        return _stay(order, TransitionOutcome.IGNORED, "order not paid yet")

    raw = event.status_name
    message = event.status_message

    if status is PrintStatus.IN_PRODUCTION:
        if current is OrderStatus.PRINTING:
            return _stay(order, TransitionOutcome.NOOP, "already printing")
        if current is not OrderStatus.PAID:
            return _stay(order, TransitionOutcome.IGNORED, f"stale in_production for {current.value} order")
        return Transition(
            TransitionOutcome.APPLIED,
            current,
            OrderStatus.PRINTING,
            {"status": OrderStatus.PRINTING, "provider_status": raw},
            (SendNotification(NotificationCategory.IN_PRODUCTION),),
        )

    if status is PrintStatus.SHIPPED:
        if current is OrderStatus.SHIPPED:
            return _stay(order, TransitionOutcome.NOOP, "already shipped")
        changes: dict[str, Any] = {
            "status": OrderStatus.SHIPPED,
            "provider_status": raw,
            "shipped_at": now,
        }
        if event.tracking is not None:
            changes["tracking"] = event.tracking
        return Transition(
            TransitionOutcome.APPLIED,
            current,
            OrderStatus.SHIPPED,
            changes,
            (SendNotification(NotificationCategory.SHIPPED),),
        )

    if status is PrintStatus.DELIVERED:
        return Transition(
            TransitionOutcome.APPLIED,
            current,
            OrderStatus.DELIVERED,
            {"status": OrderStatus.DELIVERED, "provider_status": raw},
            (SendNotification(NotificationCategory.STATUS_UPDATE, message),),
        )

    if status in (PrintStatus.REJECTED, PrintStatus.CANCELED):
        if current not in _IN_FLIGHT:
            return _stay(order, TransitionOutcome.IGNORED, f"{status.value} after {current.value}")
        target = _TERMINAL_FOR[status]
        changes = {"status": target, "provider_status": raw}
        if status is PrintStatus.REJECTED:
            changes["last_error"] = message or "Order was rejected by the print provider"
        effects: list[Effect] = []
        if not order.is_refunded:
            effects.append(IssueRefund(refund_reason(target, message)))
        effects.append(SendNotification(_REFUND_CATEGORY[target], message))
        return Transition(TransitionOutcome.APPLIED, current, target, changes, tuple(effects))

    # Unrecognized provider status: keep ours, record theirs.
    if raw == order.provider_status:
        return _stay(order, TransitionOutcome.NOOP, f"provider status {raw!r} already recorded")
    return Transition(
        TransitionOutcome.APPLIED,
        current,
        current,
        {"provider_status": raw},
        (SendNotification(NotificationCategory.STATUS_UPDATE, message),),
    )


def _on_terminal(order: PrintOrder, status: PrintStatus, event: OrderEvent) -> Transition:
    current = order.status
    if current in _REFUND_CATEGORY and status in (PrintStatus.REJECTED, PrintStatus.CANCELED):
        if not order.is_refunded:
            return Transition(
                TransitionOutcome.RESUME,
                current,
                current,
                effects=(
                    IssueRefund(refund_reason(current, event.status_message or order.last_error)),
                    SendNotification(_REFUND_CATEGORY[current], event.status_message),
                ),
                note="refund still owed",
            )
        if _TERMINAL_FOR[status] is current:
            return _stay(order, TransitionOutcome.NOOP, "already refunded")
    if _TERMINAL_FOR.get(status) is current:
        return _stay(order, TransitionOutcome.NOOP, f"already {current.value}")
    return _stay(order, TransitionOutcome.IGNORED, f"order is {current.value}")


def tracking_from_line_items(line_item_statuses: list[dict[str, Any]] | None) -> TrackingInfo | None:
    """Tracking from the first line item that carries messages."""
    for item in line_item_statuses or []:
        messages = item.get("messages") if isinstance(item, dict) else None
        if messages:
            urls = messages.get("tracking_urls") or []
            if isinstance(urls, str):
                urls = [urls]
            return TrackingInfo(
                tracking_id=messages.get("tracking_id"),
                carrier_name=messages.get("carrier_name"),
                tracking_urls=list(urls),
            )
    return None
