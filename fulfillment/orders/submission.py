"""Print job submission for paid orders.

Submission is a single POST to the print provider and is never retried
here: a duplicate POST could create a second print job. Before the POST
the submitter claims the order in the store (``pending`` or ``failed``
to ``submitting``); only the claim holder calls the provider, so
concurrent deliveries of one payment create at most one job. Attempts
and failures are recorded on the order so the reconciliation sweep and
provider redeliveries can pick the order up again.
"""

from __future__ import annotations

import dataclasses
import logging

from fulfillment.clients.printer import PrintProvider
from fulfillment.errors import (
    ProviderError,
    StoreError,
    SubmissionFailure,
    SubmissionInProgress,
    TransitionPersistenceFailure,
)
from fulfillment.models import PrintOrder, SubmissionStatus
from fulfillment.orders.store import OrderStore

logger = logging.getLogger(__name__)


class PrintJobSubmitter:
    def __init__(self, orders: OrderStore, printer: PrintProvider):
        self._orders = orders
        self._printer = printer

    def submit(self, order: PrintOrder, stale_before: float | None = None) -> PrintOrder:
        """Create the print job and store its id. Returns the updated order.

        ``stale_before`` lets the caller take over a ``submitting`` claim
        last touched before that timestamp.

        Raises ``SubmissionInProgress`` when another handler holds the
        claim, ``SubmissionFailure`` when the provider call fails and
        ``TransitionPersistenceFailure`` when the order cannot be updated.
        """
        if order.provider_job_id:
            return order
        try:
            claimed = self._orders.claim_submission(order.order_id, stale_before)
        except StoreError as exc:
            raise TransitionPersistenceFailure(f"order {order.order_id} update failed") from exc
        if not claimed:
            logger.info("Submission for order %s already claimed elsewhere", order.order_id)
            raise SubmissionInProgress(f"order {order.order_id} submission in progress")
        attempts = order.submission_attempts + 1

        try:
            job_id = self._printer.create_print_job(order)
        except ProviderError as exc:
            self._record_error(order, str(exc))
            raise SubmissionFailure(f"print job for order {order.order_id} not created") from exc

        changes = {
            "provider_job_id": job_id,
            "submission_status": SubmissionStatus.SUBMITTED,
            "submission_attempts": attempts,
            "last_error": None,
        }
        try:
            self._orders.update_fields(order.order_id, changes)
        except StoreError as exc:
            logger.error("Print job %s created but not stored for order %s", job_id, order.order_id)
            raise TransitionPersistenceFailure(f"order {order.order_id} job id not stored") from exc
        logger.info("Order %s submitted to printer as job %s", order.order_id, job_id)
        return dataclasses.replace(order, **changes)

    def _record_error(self, order: PrintOrder, error: str) -> None:
        try:
            self._orders.update_fields(
                order.order_id,
                {
                    "submission_status": SubmissionStatus.FAILED,
                    "last_error": error,
                    "retry_count": order.retry_count + 1,
                },
            )
        except StoreError:
            logger.exception("Could not record submission failure for order %s", order.order_id)
