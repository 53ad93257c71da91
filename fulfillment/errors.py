"""Error taxonomy for webhook processing.

Each error carries the HTTP status the ingress answers with, which is
what drives the provider's retry policy:

- 2xx: done (including benign no-ops)
- 4xx: do not retry (fix the sender)
- 5xx: retry later (state was not fully committed)
"""

from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for all fulfillment errors."""

    status_code: int = 500
    status_word: str = "error"


# ── Rejected, not retried ─────────────────────────────────────────────────


class AuthenticationFailure(FulfillmentError):
    """Bad or missing webhook signature."""

    status_code = 401
    status_word = "unauthorized"


class MalformedEvent(FulfillmentError):
    """Payload is not JSON or violates the envelope schema."""

    status_code = 400
    status_word = "malformed"


# ── Benign no-ops ─────────────────────────────────────────────────────────


class UnknownOrder(FulfillmentError):
    """Event references an order not present locally."""

    status_code = 200
    status_word = "ignored"


class DuplicateEvent(FulfillmentError):
    """Event was already processed (idempotency hit)."""

    status_code = 200
    status_word = "duplicate"


class SubmissionInProgress(FulfillmentError):
    """Another handler holds the order's submission claim.

    The event is not recorded as processed: if the claim holder fails,
    its own delivery is retried and finishes the work.
    """

    status_code = 200
    status_word = "in_progress"


# ── Fatal, provider should retry ──────────────────────────────────────────


class TransitionPersistenceFailure(FulfillmentError):
    """Order Store write failed or could not win the conditional update."""

    status_code = 500


class CompensationFailure(FulfillmentError):
    """A refund could not be recorded."""

    status_code = 500


class SubmissionFailure(FulfillmentError):
    """Print job submission failed after payment was confirmed."""

    status_code = 500


class IdempotencyFailure(FulfillmentError):
    """Idempotency ledger could not be read or written."""

    status_code = 500


# ── Operator / customer actions ───────────────────────────────────────────


class CancellationNotAllowed(FulfillmentError):
    """Order status does not permit a customer cancellation."""

    status_code = 409
    status_word = "conflict"


# ── Logged only ───────────────────────────────────────────────────────────


class NotificationFailure(FulfillmentError):
    """Email could not be delivered. Never escalated to the provider."""


# ── Backend errors (mapped onto the taxonomy by callers) ─────────────────


class StoreError(Exception):
    """Order or user storage backend failure."""


class LedgerError(Exception):
    """Credit ledger backend failure."""


class RefundNotAllowed(CompensationFailure):
    """Order status or amount does not permit a refund."""


class ProviderError(Exception):
    """Outbound provider API call failed."""
