"""Print provider client (Lulu Print API over httpx).

Covers print-job submission and cancellation plus the webhook
subscription lifecycle: on startup we make sure exactly one active
subscription points at our endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from fulfillment.clients.retry import retry_idempotent
from fulfillment.errors import ProviderError
from fulfillment.models import PrintOrder

logger = logging.getLogger(__name__)

WEBHOOK_TOPICS = ["PRINT_JOB_STATUS_CHANGED"]


class PrintProvider(Protocol):
    def create_print_job(self, order: PrintOrder) -> str: ...

    def cancel_print_job(self, job_id: str) -> None: ...


def build_print_job_payload(order: PrintOrder, pod_package_id: str) -> dict[str, Any]:
    """Map an order onto the provider's print-job request body."""
    addr = order.shipping_address
    return {
        "contact_email": addr.email,
        "external_id": order.external_id,
        "shipping_level": order.shipping_level.value,
        "shipping_address": {
            "name": addr.name,
            "street1": addr.street1,
            "street2": addr.street2 or "",
            "city": addr.city,
            "state_code": addr.state_code or "",
            "postcode": addr.postcode,
            "country_code": addr.country_code,
            "phone_number": addr.phone_number,
            "email": addr.email,
        },
        "line_items": [
            {
                "external_id": order.external_id,
                "title": order.book_title,
                "quantity": order.quantity,
                "printable_normalization": {
                    "pod_package_id": pod_package_id,
                    "cover": {"source_url": order.cover_pdf_url},
                    "interior": {"source_url": order.interior_pdf_url},
                },
            }
        ],
    }


class LuluClient:
    """Explicitly constructed print API client; ``close()`` at shutdown."""

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://api.lulu.com/",
        pod_package_id: str = "",
        http: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        self._pod_package_id = pod_package_id
        self._http = http or httpx.Client(
            base_url=api_base.rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, json: dict | None = None) -> dict[str, Any]:
        try:
            response = self._http.request(method, path, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Print API %s %s failed: HTTP %d", method, path, exc.response.status_code
            )
            raise ProviderError(f"{method} {path} -> HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("Print API %s %s failed: %s", method, path, type(exc).__name__)
            raise ProviderError(f"{method} {path} -> {type(exc).__name__}") from exc
        return response.json() if response.content else {}

    @retry_idempotent()
    def _get(self, path: str) -> dict[str, Any]:
        response = self._http.get(path)
        response.raise_for_status()
        return response.json()

    def create_print_job(self, order: PrintOrder) -> str:
        """Submit the order; returns the provider's print job id."""
        if not self._pod_package_id:
            raise ProviderError("POD package id not configured")
        job = self._request(
            "POST", "print-jobs/", build_print_job_payload(order, self._pod_package_id)
        )
        job_id = job.get("id")
        if job_id is None:
            raise ProviderError(f"print job response for {order.external_id} has no id")
        logger.info(
            "Print job %s created for order %s (status=%s)",
            job_id, order.order_id, (job.get("status") or {}).get("name"),
        )
        return str(job_id)

    def cancel_print_job(self, job_id: str) -> None:
        self._request("PUT", f"print-jobs/{job_id}/status/", {"name": "CANCELED"})
        logger.info("Print job %s cancellation requested", job_id)

    def list_webhooks(self) -> list[dict[str, Any]]:
        try:
            return self._get("webhooks/").get("results", [])
        except httpx.HTTPError as exc:
            raise ProviderError("webhook listing failed") from exc

    def ensure_webhook(self, url: str, topics: list[str] | None = None) -> str:
        """Find, reactivate or create our webhook subscription. Returns its id."""
        topics = topics or WEBHOOK_TOPICS
        for hook in self.list_webhooks():
            if hook.get("url") != url:
                continue
            if not hook.get("is_active", True):
                self._request("PATCH", f"webhooks/{hook['id']}/", {"is_active": True})
                logger.info("Reactivated webhook %s for %s", hook["id"], url)
            else:
                logger.info("Found existing webhook %s for %s", hook["id"], url)
            return str(hook["id"])

        created = self._request("POST", "webhooks/", {"url": url, "topics": topics})
        logger.info("Registered webhook %s for %s (topics=%s)", created.get("id"), url, topics)
        return str(created.get("id"))
