"""Tests for the Compensation Engine.

- Refund totals never exceed the order's recorded cost
- Status guard and partial-amount bounds
- Ledger failure is surfaced, never swallowed, and leaves the order
  eligible for a retry
- A ledger entry without the order marker is repaired, not duplicated
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fulfillment.credits.compensation import CompensationEngine
from fulfillment.errors import CompensationFailure, LedgerError, RefundNotAllowed, StoreError
from fulfillment.models import (
    CreditReason,
    CreditTransaction,
    OrderStatus,
    order_correlation_id,
)


def _refund_total(ledger, order_id: str) -> int:
    return sum(
        tx.amount for tx in ledger.find_by_correlation(order_correlation_id(order_id), CreditReason.REFUND)
    )


class TestRefund:
    def test_full_refund_equals_order_cost(self, make_order, compensation, ledger, orders, users):
        order = make_order(OrderStatus.REJECTED, credits=12)
        tx = compensation.refund(order.order_id, reason="Order rejected: cover file corrupt")

        assert tx.amount == 12
        assert tx.reason is CreditReason.REFUND
        assert tx.correlation_id == f"order:{order.order_id}"
        assert "cover file corrupt" in tx.description
        assert order.external_id in tx.description
        assert _refund_total(ledger, order.order_id) == 12
        assert users.get("user_1").credits_balance == 12
        assert orders.get(order.order_id).refund_transaction_id == tx.transaction_id

    def test_second_refund_returns_existing_entry(self, make_order, compensation, ledger):
        order = make_order(OrderStatus.CANCELLED, credits=7)
        first = compensation.refund(order.order_id)
        second = compensation.refund(order.order_id)

        assert second.transaction_id == first.transaction_id
        assert _refund_total(ledger, order.order_id) == 7
        assert ledger.balance("user_1") == 7

    @pytest.mark.parametrize("status", [OrderStatus.PAID, OrderStatus.PRINTING])
    def test_refund_from_in_flight_status(self, make_order, compensation, status):
        order = make_order(status)
        assert compensation.refund(order.order_id).amount == 12

    @pytest.mark.parametrize("status", [OrderStatus.CREATED, OrderStatus.SHIPPED, OrderStatus.DELIVERED])
    def test_status_guard(self, make_order, compensation, ledger, status):
        order = make_order(status)
        with pytest.raises(RefundNotAllowed):
            compensation.refund(order.order_id)
        assert _refund_total(ledger, order.order_id) == 0

    def test_partial_refund_within_bounds(self, make_order, compensation, ledger):
        order = make_order(OrderStatus.PRINTING, credits=12)
        tx = compensation.refund(order.order_id, amount=5, reason="Partial shipment")
        assert tx.amount == 5
        # one refund entry per order, full or partial
        assert compensation.refund(order.order_id).transaction_id == tx.transaction_id
        assert _refund_total(ledger, order.order_id) == 5

    @pytest.mark.parametrize("amount", [0, -3, 13])
    def test_partial_refund_out_of_bounds(self, make_order, compensation, amount):
        order = make_order(OrderStatus.PRINTING, credits=12)
        with pytest.raises(RefundNotAllowed):
            compensation.refund(order.order_id, amount=amount)

    def test_zero_cost_order_settled_with_empty_refund(self, make_order, compensation, ledger, orders):
        order = make_order(OrderStatus.REJECTED, credits=0)

        tx = compensation.refund(order.order_id)

        assert tx.amount == 0
        assert orders.get(order.order_id).refund_transaction_id == tx.transaction_id
        assert ledger.balance("user_1") == 0
        assert compensation.refund(order.order_id).transaction_id == tx.transaction_id

    def test_settle_reports_ownership(self, make_order, compensation):
        order = make_order(OrderStatus.REJECTED)
        first = compensation.settle(order.order_id)
        again = compensation.settle(order.order_id)

        assert (first.created, first.marked) == (True, True)
        assert (again.created, again.marked) == (False, False)
        assert again.transaction.transaction_id == first.transaction.transaction_id

    def test_unknown_order(self, compensation):
        with pytest.raises(CompensationFailure):
            compensation.refund("po_missing")


class TestFailureOrdering:
    def test_ledger_failure_surfaces_and_leaves_order_unrefunded(self, make_order, compensation, orders):
        # user_ghost has no user record, so the balance projection write fails
        order = make_order(OrderStatus.REJECTED, user_id="user_ghost")
        with pytest.raises(CompensationFailure):
            compensation.refund(order.order_id)
        assert orders.get(order.order_id).is_refunded is False

    def test_marker_repaired_from_existing_entry(self, make_order, compensation, ledger, orders):
        order = make_order(OrderStatus.CANCELLED)
        # ledger write committed, crash before the marker
        tx = ledger.append(
            CreditTransaction(
                user_id="user_1",
                amount=12,
                reason=CreditReason.REFUND,
                correlation_id=order_correlation_id(order.order_id),
            )
        )
        result = compensation.refund(order.order_id)

        assert result.transaction_id == tx.transaction_id
        assert orders.get(order.order_id).refund_transaction_id == tx.transaction_id
        assert _refund_total(ledger, order.order_id) == 12

    def test_marker_write_failure_is_fatal(self, make_order, ledger, orders):
        order = make_order(OrderStatus.REJECTED)
        failing_orders = MagicMock(wraps=orders)
        failing_orders.mark_refunded.side_effect = StoreError("connection reset")
        engine = CompensationEngine(failing_orders, ledger)

        with pytest.raises(CompensationFailure):
            engine.refund(order.order_id)
        # entry is in the ledger; the retry repairs the marker without a second entry
        assert _refund_total(ledger, order.order_id) == 12
        CompensationEngine(orders, ledger).refund(order.order_id)
        assert _refund_total(ledger, order.order_id) == 12
        assert orders.get(order.order_id).is_refunded

    def test_ledger_read_failure_is_fatal(self, make_order, orders):
        order = make_order(OrderStatus.REJECTED)
        broken_ledger = MagicMock()
        broken_ledger.find_by_correlation.side_effect = LedgerError("timeout")
        with pytest.raises(CompensationFailure):
            CompensationEngine(orders, broken_ledger).refund(order.order_id)

    def test_is_refunded(self, make_order, compensation):
        order = make_order(OrderStatus.REJECTED)
        assert compensation.is_refunded(order.order_id) is False
        compensation.refund(order.order_id)
        assert compensation.is_refunded(order.order_id) is True
