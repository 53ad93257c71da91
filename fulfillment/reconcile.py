"""Reconciliation sweep — finish effects a crashed delivery left behind.

The webhook path commits order state first, then side effects, then the
idempotency record. A crash in between can leave:

- a rejected/cancelled order with no refund (or a refund without the
  order's refunded marker)
- a paid order that was never submitted to the printer

This sweep finds those orders and completes them. It is triggered by an
operator, not on a schedule.

Usage:
    python -m fulfillment.reconcile
    python -m fulfillment.reconcile --dry-run
    python -m fulfillment.reconcile --max-retries 5
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field

from fulfillment.clients.printer import PrintProvider
from fulfillment.credits.compensation import CompensationEngine
from fulfillment.errors import (
    CompensationFailure,
    StoreError,
    SubmissionFailure,
    SubmissionInProgress,
    TransitionPersistenceFailure,
)
from fulfillment.models import OrderStatus, SubmissionStatus
from fulfillment.orders.state_machine import refund_reason
from fulfillment.orders.store import OrderStore
from fulfillment.orders.submission import PrintJobSubmitter

logger = logging.getLogger(__name__)

# A submission marked in-flight more recently than this is left alone.
SUBMITTING_GRACE_SECONDS = 600


@dataclass
class ReconcileReport:
    refunded: list[str] = field(default_factory=list)
    markers_repaired: list[str] = field(default_factory=list)
    resubmitted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    def summary(self) -> str:
        return (
            f"refunded={len(self.refunded)} markers_repaired={len(self.markers_repaired)} "
            f"resubmitted={len(self.resubmitted)} skipped={len(self.skipped)} "
            f"failures={len(self.failures)}"
        )


class ReconciliationSweep:
    def __init__(
        self,
        orders: OrderStore,
        compensation: CompensationEngine,
        printer: PrintProvider,
        max_submission_retries: int = 3,
    ):
        self._orders = orders
        self._compensation = compensation
        self._submitter = PrintJobSubmitter(orders, printer)
        self._max_retries = max_submission_retries

    def run(self, dry_run: bool = False, now: float | None = None) -> ReconcileReport:
        now = time.time() if now is None else now
        report = ReconcileReport()
        self._settle_refunds(report, dry_run)
        self._resubmit(report, dry_run, now)
        logger.info("Reconciliation finished: %s", report.summary())
        return report

    def _settle_refunds(self, report: ReconcileReport, dry_run: bool) -> None:
        for order in self._orders.list_by_status([OrderStatus.REJECTED, OrderStatus.CANCELLED]):
            if order.is_refunded:
                continue
            try:
                ledger_has_refund = self._compensation.is_refunded(order.order_id)
                if dry_run:
                    report.skipped.append(order.order_id)
                    continue
                self._compensation.refund(
                    order.order_id, reason=refund_reason(order.status, order.last_error)
                )
            except CompensationFailure as exc:
                logger.error("Refund reconciliation failed for order %s: %s", order.order_id, exc)
                report.failures[order.order_id] = str(exc)
                continue
            if ledger_has_refund:
                report.markers_repaired.append(order.order_id)
            else:
                report.refunded.append(order.order_id)

    def _resubmit(self, report: ReconcileReport, dry_run: bool, now: float) -> None:
        for order in self._orders.list_by_status([OrderStatus.PAID]):
            if order.provider_job_id:
                continue
            if order.retry_count >= self._max_retries:
                logger.warning(
                    "Order %s exceeded %d submission retries; needs manual review",
                    order.order_id, self._max_retries,
                )
                report.skipped.append(order.order_id)
                continue
            if (
                order.submission_status is SubmissionStatus.SUBMITTING
                and now - order.updated_at < SUBMITTING_GRACE_SECONDS
            ):
                report.skipped.append(order.order_id)
                continue
            if dry_run:
                report.skipped.append(order.order_id)
                continue
            try:
                self._submitter.submit(order, stale_before=now - SUBMITTING_GRACE_SECONDS)
            except SubmissionInProgress:
                report.skipped.append(order.order_id)
                continue
            except (SubmissionFailure, TransitionPersistenceFailure) as exc:
                logger.error("Resubmission failed for order %s: %s", order.order_id, exc)
                report.failures[order.order_id] = str(exc)
                continue
            report.resubmitted.append(order.order_id)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="fulfillment-reconcile",
        description="Complete refunds and print submissions left unfinished by webhook failures",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report only, change nothing")
    parser.add_argument("--max-retries", type=int, default=None, help="Submission retry cap")
    args = parser.parse_args(argv)

    from fulfillment.app import build_services
    from fulfillment.config import configure_logging, get_settings

    settings = get_settings()
    configure_logging(settings.log_level)
    services = build_services(settings)
    try:
        sweep = ReconciliationSweep(
            services.orders,
            services.compensation,
            services.printer,
            max_submission_retries=(
                settings.max_submission_retries if args.max_retries is None else args.max_retries
            ),
        )
        try:
            report = sweep.run(dry_run=args.dry_run)
        except StoreError as exc:
            print(f"ERROR: order store unavailable: {exc}", file=sys.stderr)
            sys.exit(1)
    finally:
        services.close()

    print(f"Reconciliation {'(dry run) ' if args.dry_run else ''}complete: {report.summary()}")
    for order_id, error in report.failures.items():
        print(f"  FAILED {order_id}: {error}")
    if report.failures:
        sys.exit(2)


if __name__ == "__main__":
    main()
