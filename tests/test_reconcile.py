"""Tests for the reconciliation sweep and its command line entry point."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from fulfillment.errors import StoreError
from fulfillment.models import (
    CreditReason,
    CreditTransaction,
    OrderStatus,
    SubmissionStatus,
    order_correlation_id,
)
from fulfillment.reconcile import SUBMITTING_GRACE_SECONDS, ReconciliationSweep, main


@pytest.fixture
def sweep(orders, compensation, printer) -> ReconciliationSweep:
    return ReconciliationSweep(orders, compensation, printer, max_submission_retries=3)


def _refunds(ledger, order_id):
    return ledger.find_by_correlation(order_correlation_id(order_id), CreditReason.REFUND)


class TestRefundSettlement:
    def test_unrefunded_rejection_is_refunded(self, sweep, make_order, orders, ledger):
        order = make_order(OrderStatus.REJECTED, last_error="cover file corrupt")

        report = sweep.run()

        assert report.refunded == [order.order_id]
        (tx,) = _refunds(ledger, order.order_id)
        assert tx.amount == 12
        assert "cover file corrupt" in tx.description
        assert orders.get(order.order_id).is_refunded

    def test_ledger_entry_without_marker_is_repaired(self, sweep, make_order, orders, ledger):
        order = make_order(OrderStatus.CANCELLED)
        ledger.append(
            CreditTransaction(
                user_id="user_1",
                amount=12,
                reason=CreditReason.REFUND,
                correlation_id=order_correlation_id(order.order_id),
            )
        )

        report = sweep.run()

        assert report.markers_repaired == [order.order_id]
        assert report.refunded == []
        assert len(_refunds(ledger, order.order_id)) == 1
        assert orders.get(order.order_id).is_refunded

    def test_refunded_orders_untouched(self, sweep, make_order, compensation, ledger):
        order = make_order(OrderStatus.REJECTED)
        compensation.refund(order.order_id)

        report = sweep.run()

        assert report.summary() == "refunded=0 markers_repaired=0 resubmitted=0 skipped=0 failures=0"
        assert len(_refunds(ledger, order.order_id)) == 1

    def test_refund_failure_reported(self, sweep, make_order):
        order = make_order(OrderStatus.REJECTED, user_id="user_ghost")
        report = sweep.run()
        assert order.order_id in report.failures


class TestResubmission:
    def test_paid_order_without_job_is_submitted(self, sweep, make_order, orders, printer):
        order = make_order(OrderStatus.PAID, provider_job_id=None)

        report = sweep.run()

        assert report.resubmitted == [order.order_id]
        stored = orders.get(order.order_id)
        assert stored.provider_job_id == "1001"
        assert stored.submission_status is SubmissionStatus.SUBMITTED

    def test_orders_with_job_ignored(self, sweep, make_order, printer):
        make_order(OrderStatus.PAID)
        sweep.run()
        assert printer.submitted == []

    def test_retry_cap(self, sweep, make_order, printer, caplog):
        order = make_order(OrderStatus.PAID, provider_job_id=None, retry_count=3)
        report = sweep.run()
        assert report.skipped == [order.order_id]
        assert printer.submitted == []
        assert "manual review" in caplog.text

    def test_recent_in_flight_submission_left_alone(self, sweep, make_order, printer):
        with freeze_time("2026-03-01 12:00:00"):
            order = make_order(
                OrderStatus.PAID,
                provider_job_id=None,
                submission_status=SubmissionStatus.SUBMITTING,
                updated_at=time.time(),
            )
            assert sweep.run().skipped == [order.order_id]

        with freeze_time("2026-03-01 12:00:00") as frozen:
            frozen.tick(SUBMITTING_GRACE_SECONDS + 1)
            assert sweep.run().resubmitted == [order.order_id]
        assert printer.submitted == [order.order_id]

    def test_submission_failure_reported_and_counted(self, sweep, make_order, orders, printer):
        printer.fail = True
        order = make_order(OrderStatus.PAID, provider_job_id=None)

        report = sweep.run()

        assert order.order_id in report.failures
        stored = orders.get(order.order_id)
        assert stored.retry_count == 1
        assert stored.submission_status is SubmissionStatus.FAILED


def test_dry_run_changes_nothing(sweep, make_order, orders, ledger, printer):
    rejected = make_order(OrderStatus.REJECTED)
    paid = make_order(OrderStatus.PAID, provider_job_id=None)

    report = sweep.run(dry_run=True)

    assert sorted(report.skipped) == sorted([rejected.order_id, paid.order_id])
    assert _refunds(ledger, rejected.order_id) == []
    assert printer.submitted == []
    assert orders.get(paid.order_id).submission_attempts == 0


class TestCli:
    def _run(self, services, settings, argv):
        with patch("fulfillment.app.build_services", return_value=services), patch(
            "fulfillment.config.get_settings", return_value=settings
        ):
            main(argv)

    def test_summary_printed(self, services, settings, make_order, capsys):
        make_order(OrderStatus.PAID, provider_job_id=None)
        self._run(services, settings, [])
        assert "complete: refunded=0 markers_repaired=0 resubmitted=1" in capsys.readouterr().out

    def test_dry_run_flag(self, services, settings, make_order, printer, capsys):
        make_order(OrderStatus.PAID, provider_job_id=None)
        self._run(services, settings, ["--dry-run"])
        assert "(dry run)" in capsys.readouterr().out
        assert printer.submitted == []

    def test_failures_exit_2(self, services, settings, make_order, capsys):
        order = make_order(OrderStatus.REJECTED, user_id="user_ghost")
        with pytest.raises(SystemExit) as exc_info:
            self._run(services, settings, [])
        assert exc_info.value.code == 2
        assert f"FAILED {order.order_id}" in capsys.readouterr().out

    def test_max_retries_flag(self, services, settings, make_order, printer):
        make_order(OrderStatus.PAID, provider_job_id=None, retry_count=3)
        self._run(services, settings, ["--max-retries", "5"])
        assert len(printer.submitted) == 1

    def test_store_unavailable_exit_1(self, services, settings, capsys):
        with patch.object(services.orders, "list_by_status", side_effect=StoreError("down")):
            with pytest.raises(SystemExit) as exc_info:
                self._run(services, settings, [])
        assert exc_info.value.code == 1
        assert "order store unavailable" in capsys.readouterr().err
