"""Compensation Engine — refunds tied one-to-one to an order.

Guards, in order:
1. Status: refunds are valid from ``paid``, ``printing``, or a terminal
   ``rejected`` / ``cancelled`` order that has not been refunded yet.
2. Correlation: a refund entry correlated to ``order:<order_id>`` may
   exist only once. The ledger's unique constraint makes this hold
   under concurrent deliveries too.

An order with no recorded credit cost is refunded with a zero-credit
entry, so it still carries a refund marker and is settled.

The ledger write happens-before the order's refunded marker. A crash in
between leaves an order whose ledger entry exists but whose marker is
unset; the next attempt finds the entry and repairs the marker without
issuing a second refund. The marker is set at most once, and the caller
that sets it owns the refund notification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fulfillment.credits.ledger import CreditLedger
from fulfillment.errors import (
    CompensationFailure,
    LedgerError,
    RefundNotAllowed,
    StoreError,
)
from fulfillment.models import (
    CreditReason,
    CreditTransaction,
    OrderStatus,
    PrintOrder,
    order_correlation_id,
)
from fulfillment.orders.store import OrderStore

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = frozenset(
    {OrderStatus.PAID, OrderStatus.PRINTING, OrderStatus.REJECTED, OrderStatus.CANCELLED}
)


@dataclass(frozen=True)
class RefundOutcome:
    transaction: CreditTransaction
    created: bool  # this call wrote the ledger entry
    marked: bool  # this call set the order's refund marker


class CompensationEngine:
    """Issues order refunds as credit ledger entries."""

    def __init__(self, orders: OrderStore, ledger: CreditLedger):
        self._orders = orders
        self._ledger = ledger

    def refund(
        self,
        order_id: str,
        amount: int | None = None,
        reason: str = "Order failed",
    ) -> CreditTransaction:
        """Refund ``amount`` credits (default: the order's full cost).

        Returns the refund entry, which is the pre-existing one when the
        order was already refunded. Raises ``CompensationFailure`` when
        the refund could not be recorded.
        """
        return self.settle(order_id, amount, reason).transaction

    def settle(
        self,
        order_id: str,
        amount: int | None = None,
        reason: str = "Order failed",
    ) -> RefundOutcome:
        """Like ``refund``, also reporting what this call changed."""
        try:
            order = self._orders.get(order_id)
        except StoreError as exc:
            raise CompensationFailure(f"could not load order {order_id}") from exc
        if order is None:
            raise CompensationFailure(f"order {order_id} not found")

        correlation = order_correlation_id(order.order_id)
        try:
            existing = self._ledger.find_by_correlation(correlation, CreditReason.REFUND)
        except LedgerError as exc:
            raise CompensationFailure(f"could not read ledger for {order_id}") from exc
        if existing:
            logger.info(
                "Print order %s already refunded (transaction=%s)",
                order_id, existing[0].transaction_id,
            )
            return RefundOutcome(existing[0], False, self._ensure_marker(order, existing[0]))

        self._check_refundable(order, amount)
        credits = order.cost.total_cost_credits if amount is None else amount

        tx = CreditTransaction(
            user_id=order.user_id,
            amount=credits,
            reason=CreditReason.REFUND,
            description=f"Refund for print order {order.external_id} - {reason}",
            correlation_id=correlation,
        )
        try:
            tx, created = self._ledger.append_once(tx)
        except LedgerError as exc:
            logger.exception("Refund ledger write failed for order %s", order_id)
            raise CompensationFailure(f"refund for order {order_id} not recorded") from exc

        marked = self._ensure_marker(order, tx)
        if created:
            logger.info(
                "Print order %s refunded: %d credits to user %s (%s)",
                order_id, tx.amount, order.user_id, reason,
            )
        return RefundOutcome(tx, created, marked)

    def _check_refundable(self, order: PrintOrder, amount: int | None) -> None:
        if order.status not in REFUNDABLE_STATUSES:
            raise RefundNotAllowed(
                f"order {order.order_id} is {order.status.value}; refund not allowed"
            )
        if amount is not None and not 0 < amount <= order.cost.total_cost_credits:
            raise RefundNotAllowed(
                f"refund of {amount} credits outside (0, {order.cost.total_cost_credits}]"
            )
        if amount is None and order.cost.total_cost_credits <= 0:
            logger.warning(
                "Print order %s has no recorded credit cost; refunding 0 credits", order.order_id
            )

    def _ensure_marker(self, order: PrintOrder, tx: CreditTransaction) -> bool:
        """Set the refund marker. True when this call set it."""
        if order.refund_transaction_id == tx.transaction_id:
            return False
        try:
            marked = self._orders.mark_refunded(order.order_id, tx.transaction_id)
        except StoreError as exc:
            logger.exception("Refund recorded but marker write failed for order %s", order.order_id)
            raise CompensationFailure(
                f"refund marker for order {order.order_id} not persisted"
            ) from exc
        if not marked:
            logger.info("Refund marker for order %s already set", order.order_id)
        return marked

    def is_refunded(self, order_id: str) -> bool:
        """True when a refund entry exists for the order."""
        try:
            return bool(
                self._ledger.find_by_correlation(order_correlation_id(order_id), CreditReason.REFUND)
            )
        except LedgerError as exc:
            raise CompensationFailure(f"could not read ledger for {order_id}") from exc
