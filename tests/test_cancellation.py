"""Tests for customer-initiated order cancellation and its command line."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from fulfillment.errors import CancellationNotAllowed, CompensationFailure, UnknownOrder
from fulfillment.models import CreditReason, OrderStatus, SubmissionStatus, order_correlation_id
from fulfillment.orders.cancellation import OrderCanceller, main


@pytest.fixture
def canceller(orders, compensation, printer, dispatcher) -> OrderCanceller:
    return OrderCanceller(orders, compensation, printer, dispatcher)


def _refund_total(ledger, order_id):
    return sum(
        tx.amount for tx in ledger.find_by_correlation(order_correlation_id(order_id), CreditReason.REFUND)
    )


class TestCancel:
    def test_paid_order_cancelled_refunded_and_job_cancelled(
        self, canceller, make_order, orders, ledger, printer, email_sender
    ):
        order = make_order(OrderStatus.PAID, provider_job_id="1001")

        cancelled = canceller.cancel(order.order_id, user_id="user_1")

        assert cancelled.status is OrderStatus.CANCELLED
        stored = orders.get(order.order_id)
        assert stored.status is OrderStatus.CANCELLED
        assert stored.is_refunded
        assert _refund_total(ledger, order.order_id) == 12
        assert printer.cancelled == ["1001"]
        assert [m.template_id for m in email_sender.sent] == ["print_order_canceled.en"]

    def test_printing_order_cancel_survives_provider_refusal(
        self, canceller, make_order, orders, ledger, printer, caplog
    ):
        order = make_order(OrderStatus.PRINTING, provider_job_id="1001")
        printer.fail = True

        canceller.cancel(order.order_id)

        assert orders.get(order.order_id).status is OrderStatus.CANCELLED
        assert _refund_total(ledger, order.order_id) == 12
        assert "continuing with local cancellation" in caplog.text

    def test_second_cancel_is_idempotent(self, canceller, make_order, ledger, email_sender):
        order = make_order(OrderStatus.PAID)
        canceller.cancel(order.order_id)
        again = canceller.cancel(order.order_id)

        assert again.status is OrderStatus.CANCELLED
        assert _refund_total(ledger, order.order_id) == 12
        assert len(email_sender.sent) == 1

    def test_cancel_after_provider_cancellation_refunds_once(
        self, canceller, make_order, compensation, ledger, email_sender
    ):
        order = make_order(OrderStatus.CANCELLED)
        compensation.refund(order.order_id)

        canceller.cancel(order.order_id)

        assert _refund_total(ledger, order.order_id) == 12
        assert email_sender.sent == []

    @pytest.mark.parametrize(
        "status", [OrderStatus.CREATED, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.REJECTED]
    )
    def test_status_not_cancellable(self, canceller, make_order, orders, ledger, status):
        order = make_order(status)
        with pytest.raises(CancellationNotAllowed):
            canceller.cancel(order.order_id)
        assert orders.get(order.order_id).status is status
        assert _refund_total(ledger, order.order_id) == 0

    def test_in_flight_submission_blocks_cancel(self, canceller, make_order, orders):
        order = make_order(
            OrderStatus.PAID, provider_job_id=None, submission_status=SubmissionStatus.SUBMITTING
        )
        with pytest.raises(CancellationNotAllowed):
            canceller.cancel(order.order_id)
        assert orders.get(order.order_id).status is OrderStatus.PAID

    def test_other_users_order_is_unknown(self, canceller, make_order, orders):
        order = make_order(OrderStatus.PAID)
        with pytest.raises(UnknownOrder):
            canceller.cancel(order.order_id, user_id="user_es")
        assert orders.get(order.order_id).status is OrderStatus.PAID

    def test_missing_order(self, canceller):
        with pytest.raises(UnknownOrder):
            canceller.cancel("po_missing")

    def test_refund_failure_surfaces_after_cancel(self, canceller, make_order, orders, printer):
        order = make_order(OrderStatus.PAID, user_id="user_ghost")
        with pytest.raises(CompensationFailure):
            canceller.cancel(order.order_id)
        assert orders.get(order.order_id).status is OrderStatus.CANCELLED
        assert printer.cancelled == []

    def test_lost_race_recomputed(self, make_order, orders, compensation, printer, ledger):
        order = make_order(OrderStatus.PAID)
        racing = MagicMock(wraps=orders)

        def printing_first(order_id, expected, changes):
            # a provider webhook moves the order to printing first
            orders.compare_and_set(order_id, OrderStatus.PAID, {"status": OrderStatus.PRINTING})
            racing.compare_and_set.side_effect = None
            return orders.compare_and_set(order_id, expected, changes)

        racing.compare_and_set.side_effect = printing_first

        OrderCanceller(racing, compensation, printer).cancel(order.order_id)

        assert racing.compare_and_set.call_count == 2
        assert orders.get(order.order_id).status is OrderStatus.CANCELLED
        assert _refund_total(ledger, order.order_id) == 12


class TestCli:
    def _run(self, services, settings, argv):
        with patch("fulfillment.app.build_services", return_value=services), patch(
            "fulfillment.config.get_settings", return_value=settings
        ):
            main(argv)

    def test_cancel_prints_confirmation(self, services, settings, make_order, orders, capsys):
        order = make_order(OrderStatus.PAID)
        self._run(services, settings, [order.order_id, "--user", "user_1"])
        assert f"Order {order.order_id} canceled" in capsys.readouterr().out
        assert orders.get(order.order_id).status is OrderStatus.CANCELLED

    def test_not_cancellable_exit_2(self, services, settings, make_order, capsys):
        order = make_order(OrderStatus.SHIPPED)
        with pytest.raises(SystemExit) as exc_info:
            self._run(services, settings, [order.order_id])
        assert exc_info.value.code == 2
        assert "cannot be canceled" in capsys.readouterr().err

    def test_refund_failure_exit_1(self, services, settings, make_order, capsys):
        order = make_order(OrderStatus.PAID, user_id="user_ghost")
        with pytest.raises(SystemExit) as exc_info:
            self._run(services, settings, [order.order_id])
        assert exc_info.value.code == 1
        assert "failed" in capsys.readouterr().err
