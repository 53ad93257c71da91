"""Fulfillment service — FastAPI application and service wiring.

All clients are constructed once in ``build_services`` and closed at
shutdown; nothing is lazily created on first use. Tests pass a
prebuilt ``Services`` into ``create_app``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable

from fastapi import FastAPI

from fulfillment.clients.payments import PaymentGateway, StripeClient
from fulfillment.clients.printer import LuluClient, PrintProvider
from fulfillment.config import Settings, configure_logging, get_settings
from fulfillment.credits.compensation import CompensationEngine
from fulfillment.credits.ledger import CreditLedger, InMemoryCreditLedger, PostgresCreditLedger
from fulfillment.db import init_tables
from fulfillment.errors import ProviderError
from fulfillment.notifications.dispatcher import NotificationDispatcher
from fulfillment.notifications.email import SmtpEmailSender
from fulfillment.orders.store import InMemoryOrderStore, OrderStore, PostgresOrderStore
from fulfillment.users import InMemoryUserDirectory, PostgresUserDirectory, UserDirectory
from fulfillment.webhooks.handlers import WebhookAudit, build_webhook_router
from fulfillment.webhooks.idempotency import (
    IdempotencyLedger,
    InMemoryIdempotencyLedger,
    PostgresIdempotencyLedger,
    RedisIdempotencyLedger,
)
from fulfillment.webhooks.ingress import WebhookIngress
from fulfillment.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the webhook engine needs, built once per process."""

    orders: OrderStore
    users: UserDirectory
    ledger: CreditLedger
    idempotency: IdempotencyLedger
    compensation: CompensationEngine
    dispatcher: NotificationDispatcher
    gateway: PaymentGateway
    printer: PrintProvider
    ingress: WebhookIngress
    audit: WebhookAudit = field(default_factory=WebhookAudit)
    backends: dict[str, str] = field(default_factory=dict)
    closers: list[Callable[[], Any]] = field(default_factory=list)

    def close(self) -> None:
        for close in self.closers:
            close()


def _build_idempotency(settings: Settings) -> IdempotencyLedger:
    backend = settings.idempotency_backend
    if backend == "redis":
        return RedisIdempotencyLedger.from_url(settings.redis_url)
    if backend == "postgres":
        return PostgresIdempotencyLedger(settings.database_url)
    if backend == "memory":
        return InMemoryIdempotencyLedger()
    raise ValueError(f"unknown idempotency backend: {backend}")


def build_services(settings: Settings) -> Services:
    """Construct stores, clients and engines from settings."""
    if settings.storage_backend == "postgres":
        orders: OrderStore = PostgresOrderStore(settings.database_url)
        users: UserDirectory = PostgresUserDirectory(settings.database_url)
        ledger: CreditLedger = PostgresCreditLedger(settings.database_url)
    elif settings.storage_backend == "memory":
        logger.warning(
            "Memory storage backend is for tests and local runs: state is lost on exit "
            "and the user directory starts empty, so refunds fail until users are added"
        )
        orders = InMemoryOrderStore()
        memory_users = InMemoryUserDirectory()
        users = memory_users
        ledger = InMemoryCreditLedger(memory_users)
    else:
        raise ValueError(f"unknown storage backend: {settings.storage_backend}")

    idempotency = _build_idempotency(settings)
    stripe = StripeClient(settings.stripe_secret_key, settings.stripe_api_base)
    lulu = LuluClient(
        settings.lulu_api_key,
        settings.lulu_api_base,
        pod_package_id=settings.lulu_pod_package_id,
    )
    sender = SmtpEmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.smtp_from,
    )
    if not sender.is_configured:
        logger.warning("SMTP not configured — order emails will be skipped")

    dispatcher = NotificationDispatcher(users, sender, settings.web_url, settings.support_email)
    compensation = CompensationEngine(orders, ledger)
    verifier = SignatureVerifier(
        {"stripe": settings.stripe_webhook_secret, "lulu": settings.lulu_webhook_secret},
        stripe_tolerance=settings.stripe_timestamp_tolerance,
    )
    for provider in ("stripe", "lulu"):
        if verifier.is_permissive(provider):
            logger.warning("%s webhook secret not configured — signatures NOT verified", provider)

    ingress = WebhookIngress(
        verifier=verifier,
        idempotency=idempotency,
        orders=orders,
        ledger=ledger,
        compensation=compensation,
        dispatcher=dispatcher,
        gateway=stripe,
        printer=lulu,
        max_transition_attempts=settings.max_transition_attempts,
    )
    return Services(
        orders=orders,
        users=users,
        ledger=ledger,
        idempotency=idempotency,
        compensation=compensation,
        dispatcher=dispatcher,
        gateway=stripe,
        printer=lulu,
        ingress=ingress,
        backends={
            "storage": settings.storage_backend,
            "idempotency": settings.idempotency_backend,
        },
        closers=[stripe.close, lulu.close],
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            if settings.storage_backend == "postgres" or settings.idempotency_backend == "postgres":
                init_tables(settings.database_url)
            app.state.services = build_services(settings)
        if owned and settings.lulu_webhook_url and settings.lulu_api_key:
            try:
                app.state.services.printer.ensure_webhook(settings.lulu_webhook_url)
            except ProviderError:
                logger.exception("Print webhook registration failed; continuing startup")
        logger.info("Fulfillment service started (backends=%s)", app.state.services.backends)
        yield
        if owned:
            app.state.services.close()
        logger.info("Fulfillment service stopped")

    app = FastAPI(title="Print Order Fulfillment", lifespan=lifespan)
    if services is not None:
        app.state.services = services
    app.include_router(build_webhook_router())

    @app.get("/health")
    async def health():
        return {"status": "ok", "backends": app.state.services.backends}

    return app


def main() -> None:
    import uvicorn

    port = int(os.environ.get("PORT", "8060"))
    uvicorn.run("fulfillment.app:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
