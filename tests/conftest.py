"""Shared fixtures for the fulfillment test suite.

Builds a complete in-memory ``Services`` graph: in-memory stores and
ledgers, fake payment and print provider clients, and an email sender
that records instead of sending. Signing helpers produce valid provider
signatures for the test secrets.
"""

from __future__ import annotations

import hashlib
import hmac
import itertools
import time

import pytest
from fastapi.testclient import TestClient

from fulfillment.app import Services, create_app
from fulfillment.config import Settings
from fulfillment.credits.compensation import CompensationEngine
from fulfillment.credits.ledger import InMemoryCreditLedger
from fulfillment.errors import ProviderError
from fulfillment.models import (
    CostBreakdown,
    OrderStatus,
    PrintOrder,
    ShippingAddress,
    User,
    create_order,
)
from fulfillment.notifications.dispatcher import NotificationDispatcher
from fulfillment.notifications.email import EmailMessage, SendResult
from fulfillment.orders.events import PaymentConfirmation
from fulfillment.orders.store import InMemoryOrderStore
from fulfillment.users import InMemoryUserDirectory
from fulfillment.webhooks.handlers import WebhookAudit
from fulfillment.webhooks.idempotency import InMemoryIdempotencyLedger
from fulfillment.webhooks.ingress import WebhookIngress
from fulfillment.webhooks.verification import SignatureVerifier

STRIPE_SECRET = "whsec_test_secret"
LULU_SECRET = "lulu-test-secret"


class RecordingEmailSender:
    """Email sender that keeps every message instead of delivering it."""

    def __init__(self, fail: bool = False):
        self.sent: list[EmailMessage] = []
        self.fail = fail

    def send(self, message: EmailMessage) -> SendResult:
        if self.fail:
            return SendResult(success=False, error="SMTPServerDisconnected")
        self.sent.append(message)
        return SendResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


class FakePaymentGateway:
    """Checkout sessions served from a dict."""

    def __init__(self) -> None:
        self.sessions: dict[str, PaymentConfirmation] = {}
        self.calls: list[str] = []
        self.fail = False

    def add_session(
        self,
        session_id: str,
        payment_status: str = "paid",
        payment_intent_id: str | None = "pi_test_1",
        **metadata: str,
    ) -> PaymentConfirmation:
        session = PaymentConfirmation(
            session_id=session_id,
            payment_status=payment_status,
            payment_intent_id=payment_intent_id,
            amount_total=1999,
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        return session

    def retrieve_checkout_session(self, session_id: str) -> PaymentConfirmation:
        self.calls.append(session_id)
        if self.fail or session_id not in self.sessions:
            raise ProviderError(f"session retrieval failed: {session_id}")
        return self.sessions[session_id]


class FakePrintProvider:
    """Print provider that hands out sequential job ids."""

    def __init__(self) -> None:
        self.submitted: list[str] = []
        self.cancelled: list[str] = []
        self.fail = False
        self.delay = 0.0
        self._ids = itertools.count(1001)

    def create_print_job(self, order: PrintOrder) -> str:
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ProviderError("POST print-jobs/ -> HTTP 503")
        self.submitted.append(order.order_id)
        return str(next(self._ids))

    def cancel_print_job(self, job_id: str) -> None:
        if self.fail:
            raise ProviderError(f"PUT print-jobs/{job_id}/status/ -> HTTP 503")
        self.cancelled.append(job_id)

    def ensure_webhook(self, url: str, topics: list[str] | None = None) -> str:
        return "wh_1"

    def close(self) -> None:
        pass


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        [
            User(user_id="user_1", email="ana@example.com", first_name="Ana"),
            User(
                user_id="user_es",
                email="lucia@example.com",
                first_name="Lucía",
                preferred_language="es",
            ),
        ]
    )


@pytest.fixture
def orders() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def ledger(users) -> InMemoryCreditLedger:
    return InMemoryCreditLedger(users)


@pytest.fixture
def idempotency() -> InMemoryIdempotencyLedger:
    return InMemoryIdempotencyLedger()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def printer() -> FakePrintProvider:
    return FakePrintProvider()


@pytest.fixture
def compensation(orders, ledger) -> CompensationEngine:
    return CompensationEngine(orders, ledger)


@pytest.fixture
def dispatcher(users, email_sender) -> NotificationDispatcher:
    return NotificationDispatcher(
        users, email_sender, web_url="https://app.test", support_email="help@test"
    )


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier({"stripe": STRIPE_SECRET, "lulu": LULU_SECRET})


@pytest.fixture
def ingress(
    verifier, idempotency, orders, ledger, compensation, dispatcher, gateway, printer
) -> WebhookIngress:
    return WebhookIngress(
        verifier=verifier,
        idempotency=idempotency,
        orders=orders,
        ledger=ledger,
        compensation=compensation,
        dispatcher=dispatcher,
        gateway=gateway,
        printer=printer,
    )


@pytest.fixture
def services(
    orders, users, ledger, idempotency, compensation, dispatcher, gateway, printer, ingress
) -> Services:
    return Services(
        orders=orders,
        users=users,
        ledger=ledger,
        idempotency=idempotency,
        compensation=compensation,
        dispatcher=dispatcher,
        gateway=gateway,
        printer=printer,
        ingress=ingress,
        audit=WebhookAudit(),
        backends={"storage": "memory", "idempotency": "memory"},
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        storage_backend="memory",
        idempotency_backend="memory",
        stripe_webhook_secret=STRIPE_SECRET,
        lulu_webhook_secret=LULU_SECRET,
    )


@pytest.fixture
def client(settings, services):
    app = create_app(settings=settings, services=services)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def make_order(orders):
    """Create and store an order in the given status."""

    def _make(
        status: OrderStatus = OrderStatus.PAID,
        credits: int = 12,
        user_id: str = "user_1",
        **overrides,
    ) -> PrintOrder:
        order = create_order(
            user_id=user_id,
            book_id="book_1",
            book_title="Max and the Moon",
            shipping_address=ShippingAddress(
                name="Ana Diaz",
                street1="1 Main St",
                city="Austin",
                state_code="TX",
                postcode="78701",
                country_code="US",
                phone_number="5125550100",
                email="ana@example.com",
            ),
            cost=CostBreakdown(
                manufacturing_cost=8.5,
                shipping_cost=4.0,
                total_cost=12.5,
                total_cost_credits=credits,
            ),
            cover_pdf_url="https://files.test/cover.pdf",
            interior_pdf_url="https://files.test/interior.pdf",
        )
        order.status = status
        if status not in (OrderStatus.CREATED,):
            order.provider_job_id = overrides.pop("provider_job_id", f"job_{order.order_id}")
        for key, value in overrides.items():
            setattr(order, key, value)
        return orders.create(order)

    return _make


def sign_lulu(body: bytes, secret: str = LULU_SECRET) -> dict[str, str]:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"Lulu-HMAC-SHA256": digest, "Content-Type": "application/json"}


def sign_stripe(body: bytes, secret: str = STRIPE_SECRET, timestamp: int | None = None) -> dict[str, str]:
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


@pytest.fixture
def lulu_headers():
    return sign_lulu


@pytest.fixture
def stripe_headers():
    return sign_stripe
