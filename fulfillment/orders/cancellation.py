"""Customer-initiated order cancellation.

A ``paid`` or ``printing`` order moves to ``cancelled`` through the
same conditional update the webhooks use, then the order's credits are
refunded and the provider's print job (if one exists) is cancelled. The
provider call is best effort: the local cancellation and refund stand
even when the provider refuses, which it does once production started.

Cancelling an already cancelled order is idempotent and finishes an
unsettled refund.

Usage:
    python -m fulfillment.orders.cancellation po_123 --user user_1
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from fulfillment.clients.printer import PrintProvider
from fulfillment.credits.compensation import CompensationEngine
from fulfillment.errors import (
    CancellationNotAllowed,
    FulfillmentError,
    ProviderError,
    StoreError,
    TransitionPersistenceFailure,
    UnknownOrder,
)
from fulfillment.models import NotificationCategory, OrderStatus, PrintOrder, SubmissionStatus
from fulfillment.notifications.dispatcher import NotificationDispatcher
from fulfillment.orders.store import OrderStore

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (OrderStatus.PAID, OrderStatus.PRINTING)


class OrderCanceller:
    def __init__(
        self,
        orders: OrderStore,
        compensation: CompensationEngine,
        printer: PrintProvider,
        dispatcher: NotificationDispatcher | None = None,
        max_attempts: int = 3,
    ):
        self._orders = orders
        self._compensation = compensation
        self._printer = printer
        self._dispatcher = dispatcher
        self._max_attempts = max(1, max_attempts)

    def cancel(
        self,
        order_id: str,
        user_id: str | None = None,
        reason: str = "Canceled by customer",
    ) -> PrintOrder:
        """Cancel the order and refund it. Returns the cancelled order.

        Raises ``UnknownOrder`` when the order does not exist (or belongs
        to another user), ``CancellationNotAllowed`` when its status does
        not permit cancellation, ``CompensationFailure`` when the refund
        could not be recorded.
        """
        order = self._cancel_in_store(order_id, user_id)

        settled = self._compensation.settle(order.order_id, reason=reason)

        if order.provider_job_id:
            try:
                self._printer.cancel_print_job(order.provider_job_id)
            except ProviderError as exc:
                logger.warning(
                    "Failed to cancel print job %s for order %s, continuing with local cancellation: %s",
                    order.provider_job_id, order.order_id, exc,
                )

        if settled.marked and self._dispatcher is not None:
            self._dispatcher.notify(order, NotificationCategory.CANCELED, reason)
        logger.info(
            "Print order %s canceled (credits refunded=%d)",
            order.order_id, settled.transaction.amount,
        )
        return order

    def _load(self, order_id: str, user_id: str | None) -> PrintOrder:
        try:
            order = self._orders.get(order_id)
        except StoreError as exc:
            raise TransitionPersistenceFailure(f"could not load order {order_id}") from exc
        if order is None or (user_id is not None and order.user_id != user_id):
            raise UnknownOrder(order_id)
        return order

    def _cancel_in_store(self, order_id: str, user_id: str | None) -> PrintOrder:
        for _ in range(self._max_attempts):
            order = self._load(order_id, user_id)
            if order.status is OrderStatus.CANCELLED:
                logger.info("Print order %s already canceled", order_id)
                return order
            if order.status not in CANCELLABLE_STATUSES:
                raise CancellationNotAllowed(
                    f"order {order_id} is {order.status.value}; cannot be canceled"
                )
            if order.submission_status is SubmissionStatus.SUBMITTING:
                raise CancellationNotAllowed(f"order {order_id} is being submitted to the printer")
            changes = {"status": OrderStatus.CANCELLED, "provider_status": "canceled"}
            try:
                won = self._orders.compare_and_set(order_id, order.status, changes)
            except StoreError as exc:
                raise TransitionPersistenceFailure(f"order {order_id} update failed") from exc
            if won:
                logger.info("Order %s: %s -> cancelled (customer)", order_id, order.status.value)
                order.status = OrderStatus.CANCELLED
                order.provider_status = "canceled"
                order.updated_at = time.time()
                return order
        raise TransitionPersistenceFailure(
            f"order {order_id} lost {self._max_attempts} conditional updates"
        )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="fulfillment-cancel",
        description="Cancel a paid print order and refund its credits",
    )
    parser.add_argument("order_id", help="Print order id")
    parser.add_argument("--user", default=None, help="Only cancel if the order belongs to this user")
    parser.add_argument("--reason", default="Canceled by customer", help="Refund reason")
    args = parser.parse_args(argv)

    from fulfillment.app import build_services
    from fulfillment.config import configure_logging, get_settings

    settings = get_settings()
    configure_logging(settings.log_level)
    services = build_services(settings)
    canceller = OrderCanceller(
        services.orders,
        services.compensation,
        services.printer,
        services.dispatcher,
        max_attempts=settings.max_transition_attempts,
    )
    try:
        order = canceller.cancel(args.order_id, user_id=args.user, reason=args.reason)
    except (UnknownOrder, CancellationNotAllowed) as exc:
        print(f"Cannot cancel {args.order_id}: {exc}", file=sys.stderr)
        sys.exit(2)
    except FulfillmentError as exc:
        print(f"Cancellation of {args.order_id} failed: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        services.close()
    print(f"Order {order.order_id} canceled")


if __name__ == "__main__":
    main()
