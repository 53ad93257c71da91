"""Webhook idempotency — durable deduplication by provider event id.

Contract:
- Key is ``(provider, provider_event_id)``; a second record for the same
  key is refused atomically (unique constraint / SET NX)
- ``is_processed`` is the early lookup, ``record`` runs only after the
  event's effects committed
- Duplicates are acknowledged with 200 (providers retry on errors)
- Backend failures raise ``IdempotencyFailure`` (fail closed, 500) so a
  provider retry never skips work nobody recorded
- Redis key pattern: webhook:seen:{provider}:{provider_event_id}
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Protocol

import psycopg
import redis as redis_lib

from fulfillment.db import connect
from fulfillment.errors import IdempotencyFailure
from fulfillment.models import EventOutcome, WebhookEventRecord

logger = logging.getLogger(__name__)

# Key prefix for webhook dedup
_KEY_PREFIX = "webhook:seen"


class IdempotencyLedger(Protocol):
    def is_processed(self, provider: str, event_id: str) -> bool: ...

    def record(self, record: WebhookEventRecord) -> bool: ...

    def get(self, provider: str, event_id: str) -> WebhookEventRecord | None: ...


class InMemoryIdempotencyLedger:
    def __init__(self) -> None:
        self._records: dict[tuple[str, str], WebhookEventRecord] = {}
        self._lock = threading.Lock()

    def is_processed(self, provider: str, event_id: str) -> bool:
        with self._lock:
            return (provider, event_id) in self._records

    def record(self, record: WebhookEventRecord) -> bool:
        key = (record.provider, record.provider_event_id)
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = record
        return True

    def get(self, provider: str, event_id: str) -> WebhookEventRecord | None:
        with self._lock:
            return self._records.get((provider, event_id))


class PostgresIdempotencyLedger:
    """``webhook_events`` table; the primary key makes the insert atomic."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    def is_processed(self, provider: str, event_id: str) -> bool:
        try:
            with connect(self._dsn) as conn:
                row = conn.execute(
                    "SELECT 1 FROM webhook_events WHERE provider = %s AND provider_event_id = %s",
                    (provider, event_id),
                ).fetchone()
        except psycopg.Error as exc:
            logger.exception("Idempotency lookup failed for %s/%s", provider, event_id)
            raise IdempotencyFailure(f"lookup failed for {provider}/{event_id}") from exc
        return row is not None

    def record(self, record: WebhookEventRecord) -> bool:
        try:
            with connect(self._dsn) as conn:
                cur = conn.execute(
                    """INSERT INTO webhook_events
                           (provider, provider_event_id, outcome, order_id, first_seen_at)
                       VALUES (%s, %s, %s, %s, %s)
                       ON CONFLICT (provider, provider_event_id) DO NOTHING""",
                    (
                        record.provider,
                        record.provider_event_id,
                        record.outcome.value,
                        record.order_id,
                        record.first_seen_at,
                    ),
                )
                inserted = cur.rowcount == 1
        except psycopg.Error as exc:
            logger.exception(
                "Idempotency record failed for %s/%s", record.provider, record.provider_event_id
            )
            raise IdempotencyFailure(
                f"record failed for {record.provider}/{record.provider_event_id}"
            ) from exc
        return inserted

    def get(self, provider: str, event_id: str) -> WebhookEventRecord | None:
        try:
            with connect(self._dsn) as conn:
                row = conn.execute(
                    """SELECT provider, provider_event_id, outcome, order_id, first_seen_at
                       FROM webhook_events WHERE provider = %s AND provider_event_id = %s""",
                    (provider, event_id),
                ).fetchone()
        except psycopg.Error as exc:
            raise IdempotencyFailure(f"lookup failed for {provider}/{event_id}") from exc
        if row is None:
            return None
        return WebhookEventRecord(
            provider=row["provider"],
            provider_event_id=row["provider_event_id"],
            outcome=EventOutcome(row["outcome"]),
            order_id=row["order_id"],
            first_seen_at=row["first_seen_at"],
        )


class RedisIdempotencyLedger:
    """Redis SET NX per event. No TTL: records are durable like the table."""

    def __init__(self, client: redis_lib.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> RedisIdempotencyLedger:
        return cls(redis_lib.from_url(redis_url, decode_responses=True))

    @staticmethod
    def _key(provider: str, event_id: str) -> str:
        return f"{_KEY_PREFIX}:{provider}:{event_id}"

    def is_processed(self, provider: str, event_id: str) -> bool:
        try:
            return bool(self._redis.exists(self._key(provider, event_id)))
        except redis_lib.RedisError as exc:
            logger.warning("Redis unavailable for webhook dedup: %s/%s", provider, event_id)
            raise IdempotencyFailure(f"lookup failed for {provider}/{event_id}") from exc

    def record(self, record: WebhookEventRecord) -> bool:
        key = self._key(record.provider, record.provider_event_id)
        value = json.dumps(
            {
                "outcome": record.outcome.value,
                "order_id": record.order_id,
                "first_seen_at": record.first_seen_at,
            }
        )
        try:
            was_set = self._redis.set(key, value, nx=True)
        except redis_lib.RedisError as exc:
            logger.warning("Failed to mark webhook as seen: %s", key)
            raise IdempotencyFailure(f"record failed for {key}") from exc
        if not was_set:
            logger.info("Webhook already recorded: %s", key)
        return bool(was_set)

    def get(self, provider: str, event_id: str) -> WebhookEventRecord | None:
        try:
            raw = self._redis.get(self._key(provider, event_id))
        except redis_lib.RedisError as exc:
            raise IdempotencyFailure(f"lookup failed for {provider}/{event_id}") from exc
        if not raw:
            return None
        data = json.loads(raw)
        return WebhookEventRecord(
            provider=provider,
            provider_event_id=event_id,
            outcome=EventOutcome(data["outcome"]),
            order_id=data.get("order_id"),
            first_seen_at=data.get("first_seen_at", 0.0),
        )
