"""Webhook envelope parsing — raw body -> canonical ``OrderEvent``.

Envelopes are validated with pydantic; any schema violation (not JSON,
missing topic/type, missing object id or status name) raises
``MalformedEvent`` and the ingress answers 400. Well-formed events the
engine has no use for come back with ``EventKind.IGNORED``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from fulfillment.errors import MalformedEvent
from fulfillment.orders.events import EventKind, OrderEvent
from fulfillment.orders.state_machine import tracking_from_line_items

logger = logging.getLogger(__name__)

PRINT_JOB_STATUS_CHANGED = "PRINT_JOB_STATUS_CHANGED"

STRIPE_PAYMENT_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)

CREDIT_PURCHASE_TYPE = "credit-purchase"


# ── Print provider envelope ───────────────────────────────────────────────


class LuluStatus(BaseModel):
    name: str = Field(min_length=1)
    message: Optional[str] = None


class LuluPrintJob(BaseModel):
    id: Union[int, str]
    status: LuluStatus
    line_item_statuses: list[dict[str, Any]] = Field(default_factory=list)


class LuluEnvelope(BaseModel):
    topic: str = Field(min_length=1)
    data: dict[str, Any]
    event_id: Optional[Union[int, str]] = None
    id: Optional[Union[int, str]] = None


# ── Payment provider envelope ─────────────────────────────────────────────


class StripeData(BaseModel):
    object: dict[str, Any]


class StripeEnvelope(BaseModel):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: StripeData


def _load(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedEvent("payload is not valid JSON") from exc


def body_event_id(body: bytes) -> str:
    """Stable id for providers that do not send one: digest of the raw body."""
    return hashlib.sha256(body).hexdigest()


def parse_lulu(body: bytes) -> OrderEvent:
    payload = _load(body)
    try:
        envelope = LuluEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedEvent(f"print envelope invalid: {exc.error_count()} error(s)") from exc

    if envelope.topic != PRINT_JOB_STATUS_CHANGED:
        logger.warning("Unknown print webhook topic: %s", envelope.topic)
        raise MalformedEvent(f"unknown topic: {envelope.topic}")

    try:
        job = LuluPrintJob.model_validate(envelope.data)
    except ValidationError as exc:
        raise MalformedEvent(f"print job data invalid: {exc.error_count()} error(s)") from exc

    explicit_id = envelope.event_id if envelope.event_id is not None else envelope.id
    return OrderEvent(
        provider="lulu",
        event_id=str(explicit_id) if explicit_id is not None else body_event_id(body),
        kind=EventKind.PRINT_JOB_STATUS,
        topic=envelope.topic,
        object_id=str(job.id),
        status_name=job.status.name.strip().lower(),
        status_message=job.status.message,
        tracking=tracking_from_line_items(job.line_item_statuses),
    )


def parse_stripe(body: bytes) -> OrderEvent:
    payload = _load(body)
    try:
        envelope = StripeEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedEvent(f"stripe envelope invalid: {exc.error_count()} error(s)") from exc

    if envelope.type not in STRIPE_PAYMENT_EVENTS:
        return OrderEvent(
            provider="stripe",
            event_id=envelope.id,
            kind=EventKind.IGNORED,
            topic=envelope.type,
        )

    session = envelope.data.object
    session_id = session.get("id")
    if not isinstance(session_id, str) or not session_id:
        raise MalformedEvent(f"{envelope.type} without session id")

    metadata = session.get("metadata") or {}
    kind = (
        EventKind.CREDIT_PURCHASE
        if isinstance(metadata, dict) and metadata.get("type") == CREDIT_PURCHASE_TYPE
        else EventKind.PAYMENT_CONFIRMED
    )
    return OrderEvent(
        provider="stripe",
        event_id=envelope.id,
        kind=kind,
        topic=envelope.type,
        object_id=session_id,
    )


PARSERS: dict[str, Callable[[bytes], OrderEvent]] = {
    "stripe": parse_stripe,
    "lulu": parse_lulu,
}


def parse_event(provider: str, body: bytes) -> OrderEvent:
    parser = PARSERS.get(provider)
    if parser is None:
        raise MalformedEvent(f"unknown provider: {provider}")
    return parser(body)
