"""Webhook Ingress — verify, parse, dedup, transition, compensate, notify.

Each inbound delivery runs:
1. Signature check against the raw body -> 401 on failure
2. Envelope parse -> 400 on schema violation
3. Idempotency lookup -> 200 "duplicate" with no side effects
4. Resolve the order (unknown order -> 200 no-op)
5. State machine + conditional order update; a lost race reloads the
   order and recomputes, a bounded number of times
6. Effects in order: print job submission, refund (both fatal on
   failure), notification (scheduled after the response, never fatal)
7. Idempotency record, then 200

Fatal errors surface as 5xx so the provider's own retry policy drives
recovery. A retry finds the order transitioned but the event unrecorded
and resumes whatever effect is still owed.

Concurrent copies of one delivery may both reach step 6. Effects are
claimed in the stores: the print submission claim and the refund marker
each have exactly one owner. A copy that finds the submission claimed
answers 200 "in_progress" without recording the event, so the owner's
own retry stays possible if it fails.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Callable

from fulfillment.clients.payments import PaymentGateway
from fulfillment.clients.printer import PrintProvider
from fulfillment.credits.compensation import CompensationEngine
from fulfillment.credits.ledger import CreditLedger
from fulfillment.errors import (
    AuthenticationFailure,
    DuplicateEvent,
    FulfillmentError,
    LedgerError,
    ProviderError,
    StoreError,
    TransitionPersistenceFailure,
    UnknownOrder,
)
from fulfillment.models import (
    CreditReason,
    CreditTransaction,
    EventOutcome,
    PrintOrder,
    WebhookEventRecord,
)
from fulfillment.notifications.dispatcher import NotificationDispatcher
from fulfillment.orders.events import EventKind, OrderEvent, PaymentConfirmation
from fulfillment.orders.state_machine import (
    Effect,
    IssueRefund,
    SendNotification,
    SubmitPrintJob,
    TransitionOutcome,
    transition,
)
from fulfillment.orders.store import OrderStore
from fulfillment.orders.submission import PrintJobSubmitter
from fulfillment.webhooks.events import CREDIT_PURCHASE_TYPE, parse_event
from fulfillment.webhooks.idempotency import IdempotencyLedger
from fulfillment.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)

Scheduler = Callable[..., Any]


def run_inline(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    fn(*args, **kwargs)


@dataclass
class IngressResult:
    """What the HTTP layer answers and what the audit log records."""

    status_code: int
    status: str
    provider: str
    event_type: str = "unknown"
    event_id: str = "unknown"
    outcome: EventOutcome | None = None
    order_id: str | None = None

    def body(self) -> dict[str, str]:
        return {"status": self.status}


class WebhookIngress:
    """Processes one verified-or-rejected webhook delivery at a time.

    Stateless between calls; safe to share across concurrent requests.
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        idempotency: IdempotencyLedger,
        orders: OrderStore,
        ledger: CreditLedger,
        compensation: CompensationEngine,
        dispatcher: NotificationDispatcher,
        gateway: PaymentGateway,
        printer: PrintProvider,
        max_transition_attempts: int = 3,
    ):
        self._verifier = verifier
        self._idempotency = idempotency
        self._orders = orders
        self._ledger = ledger
        self._compensation = compensation
        self._dispatcher = dispatcher
        self._gateway = gateway
        self._submitter = PrintJobSubmitter(orders, printer)
        self._max_attempts = max(1, max_transition_attempts)

    # ── Entry point ───────────────────────────────────────────────────────

    def handle(
        self,
        provider: str,
        body: bytes,
        headers: dict[str, str],
        schedule: Scheduler = run_inline,
    ) -> IngressResult:
        """Run the full pipeline and map the outcome onto an HTTP answer."""
        result = IngressResult(status_code=200, status="processed", provider=provider)
        try:
            if not self._verifier.verify(provider, body, headers):
                raise AuthenticationFailure(f"{provider} signature invalid")

            event = parse_event(provider, body)
            result.event_type = event.topic
            result.event_id = event.event_id

            if self._idempotency.is_processed(provider, event.event_id):
                raise DuplicateEvent(f"{provider}/{event.event_id}")

            outcome, order_id = self._process(event, schedule)
            result.outcome = outcome
            result.order_id = order_id

            record = WebhookEventRecord(
                provider=provider,
                provider_event_id=event.event_id,
                outcome=outcome,
                order_id=order_id,
            )
            if not self._idempotency.record(record):
                logger.info(
                    "Event %s/%s recorded concurrently by another delivery",
                    provider, event.event_id,
                )
            if outcome in (EventOutcome.UNKNOWN_ORDER, EventOutcome.IGNORED):
                result.status = "ignored"
        except FulfillmentError as exc:
            result.status_code = exc.status_code
            result.status = exc.status_word
            if exc.status_code >= 500:
                logger.error(
                    "Webhook %s/%s failed (%s): %s",
                    provider, result.event_id, type(exc).__name__, exc,
                )
            elif exc.status_code >= 400:
                logger.warning("Webhook %s rejected (%s): %s", provider, type(exc).__name__, exc)
        except Exception:
            logger.exception("Unexpected error processing %s webhook %s", provider, result.event_id)
            result.status_code = 500
            result.status = "error"
        return result

    # ── Event routing ─────────────────────────────────────────────────────

    def _process(
        self, event: OrderEvent, schedule: Scheduler
    ) -> tuple[EventOutcome, str | None]:
        if event.kind is EventKind.IGNORED:
            logger.info("Ignoring %s event %s (%s)", event.provider, event.event_id, event.topic)
            return EventOutcome.IGNORED, None

        if event.kind in (EventKind.PAYMENT_CONFIRMED, EventKind.CREDIT_PURCHASE):
            payment = self._retrieve_payment(event.object_id)
            if not payment.is_paid:
                logger.info(
                    "Checkout session %s not paid (payment_status=%s)",
                    payment.session_id, payment.payment_status,
                )
                return EventOutcome.IGNORED, None
            if payment.metadata.get("type") == CREDIT_PURCHASE_TYPE:
                return self._apply_credit_purchase(payment), None
            event = dataclasses.replace(event, kind=EventKind.PAYMENT_CONFIRMED, payment=payment)

        try:
            order = self._resolve_order(event)
        except UnknownOrder as exc:
            logger.warning("No print order for %s event %s: %s", event.provider, event.event_id, exc)
            return EventOutcome.UNKNOWN_ORDER, None

        return self._advance(order, event, schedule), order.order_id

    def _retrieve_payment(self, session_id: str) -> PaymentConfirmation:
        try:
            return self._gateway.retrieve_checkout_session(session_id)
        except ProviderError as exc:
            raise FulfillmentError(f"checkout session {session_id} unavailable") from exc

    def _resolve_order(self, event: OrderEvent) -> PrintOrder:
        try:
            if event.kind is EventKind.PRINT_JOB_STATUS:
                order = self._orders.get_by_provider_job_id(event.object_id)
            else:
                order = None
                order_id = event.payment.metadata.get("print_order_id") if event.payment else None
                if order_id:
                    order = self._orders.get(order_id)
                if order is None:
                    order = self._orders.get_by_payment_session(event.object_id)
        except StoreError as exc:
            raise TransitionPersistenceFailure(f"order lookup failed for {event.object_id}") from exc
        if order is None:
            raise UnknownOrder(event.object_id)
        return order

    def _apply_credit_purchase(self, payment: PaymentConfirmation) -> EventOutcome:
        user_id = payment.metadata.get("user_id")
        try:
            credits = int(payment.metadata.get("credits", 0))
        except (TypeError, ValueError):
            credits = 0
        if not user_id or credits <= 0:
            logger.error(
                "Credit purchase session %s missing user_id/credits metadata", payment.session_id
            )
            return EventOutcome.IGNORED

        tx = CreditTransaction(
            user_id=user_id,
            amount=credits,
            reason=CreditReason.PURCHASE,
            description=f"Purchased {credits} credits",
            correlation_id=payment.payment_intent_id or payment.session_id,
        )
        try:
            tx, created = self._ledger.append_once(tx)
        except LedgerError as exc:
            raise FulfillmentError(f"credit purchase for {user_id} not recorded") from exc
        if not created:
            logger.info("Credit purchase %s already recorded", tx.correlation_id)
            return EventOutcome.NOOP
        return EventOutcome.APPLIED

    # ── Transition loop ───────────────────────────────────────────────────

    def _advance(self, order: PrintOrder, event: OrderEvent, schedule: Scheduler) -> EventOutcome:
        for attempt in range(1, self._max_attempts + 1):
            t = transition(order, event)

            if t.outcome is TransitionOutcome.NOOP:
                logger.info("Order %s: %s", order.order_id, t.note)
                return EventOutcome.NOOP
            if t.outcome is TransitionOutcome.IGNORED:
                logger.info("Order %s: event %s ignored (%s)", order.order_id, event.event_id, t.note)
                return EventOutcome.IGNORED

            if t.requires_write:
                try:
                    won = self._orders.compare_and_set(order.order_id, t.from_status, t.changes)
                    fresh = self._orders.get(order.order_id)
                except StoreError as exc:
                    raise TransitionPersistenceFailure(
                        f"order {order.order_id} update failed"
                    ) from exc
                if fresh is None:
                    raise TransitionPersistenceFailure(f"order {order.order_id} disappeared")
                order = fresh
                if not won:
                    logger.info(
                        "Order %s changed concurrently (attempt %d/%d), recomputing",
                        order.order_id, attempt, self._max_attempts,
                    )
                    continue
                logger.info(
                    "Order %s: %s -> %s (event %s)",
                    order.order_id, t.from_status.value, t.to_status.value, event.event_id,
                )
            else:
                logger.info("Order %s: resuming owed effects (%s)", order.order_id, t.note)

            self._run_effects(order, t.effects, schedule)
            return EventOutcome.APPLIED

        raise TransitionPersistenceFailure(
            f"order {order.order_id} lost {self._max_attempts} conditional updates"
        )

    def _run_effects(
        self, order: PrintOrder, effects: tuple[Effect, ...], schedule: Scheduler
    ) -> None:
        refunded_elsewhere = False
        for effect in effects:
            if isinstance(effect, SubmitPrintJob):
                order = self._submitter.submit(order)
            elif isinstance(effect, IssueRefund):
                settled = self._compensation.settle(order.order_id, reason=effect.reason)
                # whoever sets the refund marker sends the refund notice
                refunded_elsewhere = not settled.marked
            elif isinstance(effect, SendNotification):
                if refunded_elsewhere:
                    logger.info(
                        "Order %s: %s notice owned by the handler that settled the refund",
                        order.order_id, effect.category,
                    )
                    continue
                schedule(self._dispatcher.notify, order, effect.category, effect.message)

