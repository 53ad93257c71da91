"""Webhook HTTP handlers — FastAPI routes for inbound provider webhooks.

Each handler:
1. Reads the raw body (needed for HMAC verification)
2. Hands body + lowercase headers to the ingress in the threadpool
   (storage and provider calls are blocking)
3. Schedules notification emails as background tasks, which run after
   the response is sent
4. Answers with the ingress status code

Security contract:
- Never return error details to webhook caller (info disclosure)
- 401 only for signature failures, 400 only for malformed envelopes
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import threading
import time

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from fulfillment.webhooks.ingress import IngressResult, WebhookIngress

logger = logging.getLogger(__name__)


class WebhookAudit:
    """Audit log lines plus per-provider receive counters."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}
        self._statuses: dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, result: IngressResult) -> None:
        with self._lock:
            self._counts[result.provider] = self._counts.get(result.provider, 0) + 1
            key = f"{result.provider}:{result.status}"
            self._statuses[key] = self._statuses.get(key, 0) + 1
            count = self._counts[result.provider]
        logger.info(
            "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s code=%d count=%d",
            result.provider,
            result.event_type,
            result.event_id,
            result.status,
            result.status_code,
            count,
        )

    def snapshot(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {"counts": dict(self._counts), "statuses": dict(self._statuses)}


async def _handle_webhook(
    request: Request, provider: str, background_tasks: BackgroundTasks
) -> JSONResponse:
    start = time.time()
    ingress: WebhookIngress = request.app.state.services.ingress
    audit: WebhookAudit = request.app.state.services.audit

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    result = await run_in_threadpool(
        ingress.handle, provider, body, headers, background_tasks.add_task
    )
    audit.record(result)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s/%s", elapsed_ms, provider, result.event_type)
    return JSONResponse(result.body(), status_code=result.status_code)


def build_webhook_router() -> APIRouter:
    router = APIRouter()

    @router.post("/webhooks/stripe")
    async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
        """Receive payment webhooks (signature-verified)."""
        return await _handle_webhook(request, "stripe", background_tasks)

    @router.post("/webhooks/lulu")
    @router.post("/api/webhooks/lulu/print-job-status")
    async def lulu_webhook(request: Request, background_tasks: BackgroundTasks):
        """Receive print job status webhooks (signature-verified)."""
        return await _handle_webhook(request, "lulu", background_tasks)

    @router.get("/webhooks/status")
    async def webhook_status(request: Request):
        """Webhook receive counts."""
        return request.app.state.services.audit.snapshot()

    return router
