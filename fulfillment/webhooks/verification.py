"""Webhook signature verification — constant-time HMAC for each provider.

Security contract:
- All verifications hash the raw request body, never a re-serialized one
- All comparisons use hmac.compare_digest() (constant-time)
- Verification failure -> 401 immediately, no payload processing
- Secret configured but signature header missing -> fail closed
- No secret configured -> permissive mode: accepted, with a WARNING on
  every single call so a disabled control never goes unnoticed
- Stripe timestamp tolerance (default 300s) to prevent replay
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

_LULU_PREFIX = "Lulu-HMAC-SHA256:"


def _permissive(provider: str) -> bool:
    logger.warning(
        "%s webhook secret not set — signature verification DISABLED, accepting payload",
        provider,
    )
    return True


def verify_lulu(body: bytes, signature_header: str | None, secret: str) -> bool:
    """Verify a print provider webhook signature.

    The provider sends a hex HMAC-SHA256 of the body in the
    ``Lulu-HMAC-SHA256`` header, sometimes repeated as a value prefix.
    """
    if not secret:
        return _permissive("lulu")
    if not signature_header:
        logger.warning("Lulu webhook without signature header — rejecting")
        return False

    received = signature_header.strip()
    if received.startswith(_LULU_PREFIX):
        received = received[len(_LULU_PREFIX):].strip()

    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed.encode(), received.lower().encode("utf-8"))


def verify_stripe(
    body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance: int = 300,
) -> bool:
    """Verify Stripe webhook signature (v1 scheme).

    Stripe sends: Stripe-Signature header with format:
    t=<timestamp>,v1=<signature>[,v1=<signature>][,v0=<deprecated>]
    """
    if not secret:
        return _permissive("stripe")
    if not signature_header:
        logger.warning("Stripe webhook without signature header — rejecting")
        return False

    timestamp_str = None
    v1_sigs: list[str] = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp_str = value
        elif key == "v1":
            v1_sigs.append(value)

    if not timestamp_str or not v1_sigs:
        return False
    try:
        timestamp = int(timestamp_str)
    except ValueError:
        return False

    if abs(time.time() - timestamp) > tolerance:
        logger.warning("Stripe webhook timestamp outside tolerance: %s", timestamp)
        return False

    signed_payload = f"{timestamp}.".encode("utf-8") + body
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected.encode(), sig.encode("utf-8")) for sig in v1_sigs)


# Provider -> signature header (lowercase)
SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "lulu": "lulu-hmac-sha256",
}


class SignatureVerifier:
    """Per-provider verification with secrets injected from settings."""

    def __init__(self, secrets: dict[str, str], stripe_tolerance: int = 300):
        self._secrets = secrets
        self._verifiers: dict[str, Callable[[bytes, str | None], bool]] = {
            "stripe": lambda body, sig: verify_stripe(
                body, sig, self._secrets.get("stripe", ""), stripe_tolerance
            ),
            "lulu": lambda body, sig: verify_lulu(body, sig, self._secrets.get("lulu", "")),
        }

    def is_permissive(self, provider: str) -> bool:
        return not self._secrets.get(provider)

    def verify(self, provider: str, body: bytes, headers: dict[str, str]) -> bool:
        """Verify ``body`` against the provider's signature header.

        Args:
            provider: 'stripe' or 'lulu'
            body: Raw request body
            headers: Request headers (lowercase keys)
        """
        verifier = self._verifiers.get(provider)
        if verifier is None:
            logger.warning("Unknown webhook provider: %s", provider)
            return False
        return verifier(body, headers.get(SIGNATURE_HEADERS[provider]))
