"""Payment provider client (Stripe REST API over httpx).

Only the checkout-session read the webhook flow needs. Webhook payloads
are never trusted for payment status: the session is re-fetched.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from fulfillment.clients.retry import retry_idempotent
from fulfillment.errors import ProviderError
from fulfillment.orders.events import PaymentConfirmation

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def retrieve_checkout_session(self, session_id: str) -> PaymentConfirmation: ...


class StripeClient:
    """Explicitly constructed Stripe client; ``close()`` at shutdown."""

    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com/v1",
        http: httpx.Client | None = None,
        timeout: float = 15.0,
    ):
        self._http = http or httpx.Client(
            base_url=api_base.rstrip("/") + "/",
            auth=(secret_key, ""),
            timeout=timeout,
        )

    def close(self) -> None:
        self._http.close()

    @retry_idempotent()
    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self._http.get(path, params=params)
        response.raise_for_status()
        return response.json()

    def retrieve_checkout_session(self, session_id: str) -> PaymentConfirmation:
        try:
            session = self._get(f"checkout/sessions/{session_id}")
        except httpx.HTTPError as exc:
            logger.error("Failed to retrieve checkout session %s: %s", session_id, exc)
            raise ProviderError(f"session retrieval failed: {session_id}") from exc

        intent = session.get("payment_intent")
        if isinstance(intent, dict):
            intent = intent.get("id")
        return PaymentConfirmation(
            session_id=session.get("id", session_id),
            payment_status=session.get("payment_status", ""),
            payment_intent_id=intent,
            amount_total=int(session.get("amount_total") or 0),
            currency=(session.get("currency") or "usd").lower(),
            metadata=dict(session.get("metadata") or {}),
        )
