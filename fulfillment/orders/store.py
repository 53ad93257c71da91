"""Order Store — durable print order records with conditional updates.

Orders are mutated only through ``compare_and_set`` (status transitions,
guarded by the stored status) and ``update_fields`` (submission and
error metadata that never touches status). Two claims are conditional
as well: ``claim_submission`` lets exactly one caller move a paid order
to ``submitting``, and ``mark_refunded`` sets the refund marker only
while it is unset. Orders are never deleted.

Two backends share one interface:
- ``PostgresOrderStore``: JSONB blob keyed by order id, status column
  used for the conditional update.
- ``InMemoryOrderStore``: same semantics behind a lock, for tests and
  local runs.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from enum import Enum
from typing import Any, Iterable, Protocol

import psycopg
from psycopg.types.json import Jsonb

from fulfillment.db import connect
from fulfillment.errors import StoreError
from fulfillment.models import OrderStatus, PrintOrder, SubmissionStatus

logger = logging.getLogger(__name__)


def serialize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Convert dataclass / enum values to their JSON form."""
    out: dict[str, Any] = {}
    for key, value in changes.items():
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            value = dataclasses.asdict(value)
        elif isinstance(value, Enum):
            value = value.value
        out[key] = value
    return out


class OrderStore(Protocol):
    """Storage contract shared by all order backends."""

    def create(self, order: PrintOrder) -> PrintOrder: ...

    def get(self, order_id: str) -> PrintOrder | None: ...

    def get_by_provider_job_id(self, provider_job_id: str) -> PrintOrder | None: ...

    def get_by_payment_session(self, session_id: str) -> PrintOrder | None: ...

    def compare_and_set(
        self, order_id: str, expected: OrderStatus, changes: dict[str, Any]
    ) -> bool: ...

    def update_fields(self, order_id: str, changes: dict[str, Any]) -> None: ...

    def claim_submission(self, order_id: str, stale_before: float | None = None) -> bool: ...

    def mark_refunded(self, order_id: str, transaction_id: str) -> bool: ...

    def list_for_user(
        self,
        user_id: str,
        status: OrderStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[PrintOrder]: ...

    def list_by_status(self, statuses: Iterable[OrderStatus]) -> list[PrintOrder]: ...


def _reject_status_change(changes: dict[str, Any]) -> None:
    if "status" in changes:
        raise ValueError("status may only change through compare_and_set")


CLAIMABLE_SUBMISSION_STATES = (SubmissionStatus.PENDING.value, SubmissionStatus.FAILED.value)


def _claimable(data: dict[str, Any], stale_before: float | None) -> bool:
    if data["status"] != OrderStatus.PAID.value or data.get("provider_job_id"):
        return False
    state = data.get("submission_status", SubmissionStatus.PENDING.value)
    if state in CLAIMABLE_SUBMISSION_STATES:
        return True
    return (
        stale_before is not None
        and state == SubmissionStatus.SUBMITTING.value
        and data.get("updated_at", 0) < stale_before
    )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryOrderStore:
    """Dict-backed order store with atomic conditional updates."""

    def __init__(self) -> None:
        self._orders: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, order: PrintOrder) -> PrintOrder:
        with self._lock:
            if order.order_id in self._orders:
                raise StoreError(f"order {order.order_id} already exists")
            self._orders[order.order_id] = json.loads(json.dumps(order.to_dict()))
        logger.info("Print order created: %s (user=%s)", order.order_id, order.user_id)
        return order

    def get(self, order_id: str) -> PrintOrder | None:
        with self._lock:
            data = self._orders.get(order_id)
            return PrintOrder.from_dict(data) if data else None

    def _find(self, key: str, value: str) -> PrintOrder | None:
        with self._lock:
            for data in self._orders.values():
                if data.get(key) == value:
                    return PrintOrder.from_dict(data)
        return None

    def get_by_provider_job_id(self, provider_job_id: str) -> PrintOrder | None:
        return self._find("provider_job_id", provider_job_id)

    def get_by_payment_session(self, session_id: str) -> PrintOrder | None:
        return self._find("payment_session_id", session_id)

    def compare_and_set(
        self, order_id: str, expected: OrderStatus, changes: dict[str, Any]
    ) -> bool:
        payload = serialize_changes(changes)
        with self._lock:
            data = self._orders.get(order_id)
            if data is None:
                raise StoreError(f"order {order_id} not found")
            if data["status"] != expected.value:
                return False
            data.update(payload)
            data["updated_at"] = time.time()
        return True

    def update_fields(self, order_id: str, changes: dict[str, Any]) -> None:
        _reject_status_change(changes)
        payload = serialize_changes(changes)
        with self._lock:
            data = self._orders.get(order_id)
            if data is None:
                raise StoreError(f"order {order_id} not found")
            data.update(payload)
            data["updated_at"] = time.time()

    def claim_submission(self, order_id: str, stale_before: float | None = None) -> bool:
        with self._lock:
            data = self._orders.get(order_id)
            if data is None:
                raise StoreError(f"order {order_id} not found")
            if not _claimable(data, stale_before):
                return False
            data["submission_status"] = SubmissionStatus.SUBMITTING.value
            data["submission_attempts"] = data.get("submission_attempts", 0) + 1
            data["updated_at"] = time.time()
        return True

    def mark_refunded(self, order_id: str, transaction_id: str) -> bool:
        with self._lock:
            data = self._orders.get(order_id)
            if data is None:
                raise StoreError(f"order {order_id} not found")
            if data.get("refund_transaction_id"):
                return False
            now = time.time()
            data.update(refund_transaction_id=transaction_id, refunded_at=now, updated_at=now)
        return True

    def list_for_user(
        self,
        user_id: str,
        status: OrderStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[PrintOrder]:
        with self._lock:
            rows = [
                d for d in self._orders.values()
                if d["user_id"] == user_id and (status is None or d["status"] == status.value)
            ]
        rows.sort(key=lambda d: d["created_at"], reverse=True)
        return [PrintOrder.from_dict(d) for d in rows[offset:offset + limit]]

    def list_by_status(self, statuses: Iterable[OrderStatus]) -> list[PrintOrder]:
        wanted = {s.value for s in statuses}
        with self._lock:
            return [PrintOrder.from_dict(d) for d in self._orders.values() if d["status"] in wanted]


# ---------------------------------------------------------------------------
# Postgres backend
# ---------------------------------------------------------------------------


class PostgresOrderStore:
    """Order store backed by the ``print_orders`` table."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    def _one(self, where: str, value: str) -> PrintOrder | None:
        try:
            with connect(self._dsn) as conn:
                row = conn.execute(
                    f"SELECT data FROM print_orders WHERE {where} = %s", (value,)
                ).fetchone()
        except psycopg.Error as exc:
            logger.exception("Failed to load print order by %s=%s", where, value)
            raise StoreError(str(exc)) from exc
        if not row:
            return None
        data = row["data"] if isinstance(row["data"], dict) else json.loads(row["data"])
        return PrintOrder.from_dict(data)

    def create(self, order: PrintOrder) -> PrintOrder:
        try:
            with connect(self._dsn) as conn:
                conn.execute(
                    """INSERT INTO print_orders
                           (order_id, user_id, status, provider_job_id, payment_session_id, data)
                       VALUES (%s, %s, %s, %s, %s, %s)""",
                    (
                        order.order_id,
                        order.user_id,
                        order.status.value,
                        order.provider_job_id,
                        order.payment_session_id,
                        Jsonb(order.to_dict()),
                    ),
                )
        except psycopg.Error as exc:
            logger.exception("Failed to create print order %s", order.order_id)
            raise StoreError(str(exc)) from exc
        logger.info("Print order created: %s (user=%s)", order.order_id, order.user_id)
        return order

    def get(self, order_id: str) -> PrintOrder | None:
        return self._one("order_id", order_id)

    def get_by_provider_job_id(self, provider_job_id: str) -> PrintOrder | None:
        return self._one("provider_job_id", provider_job_id)

    def get_by_payment_session(self, session_id: str) -> PrintOrder | None:
        return self._one("payment_session_id", session_id)

    def compare_and_set(
        self, order_id: str, expected: OrderStatus, changes: dict[str, Any]
    ) -> bool:
        payload = serialize_changes(changes)
        new_status = payload.get("status", expected.value)
        payload["status"] = new_status
        payload["updated_at"] = time.time()
        try:
            with connect(self._dsn) as conn:
                result = conn.execute(
                    """UPDATE print_orders
                       SET status = %s,
                           data = data || %s,
                           provider_job_id = COALESCE(%s, provider_job_id),
                           payment_session_id = COALESCE(%s, payment_session_id),
                           updated_at = NOW()
                       WHERE order_id = %s AND status = %s""",
                    (
                        new_status,
                        Jsonb(payload),
                        payload.get("provider_job_id"),
                        payload.get("payment_session_id"),
                        order_id,
                        expected.value,
                    ),
                )
                return result.rowcount == 1
        except psycopg.Error as exc:
            logger.exception("Conditional update failed for order %s", order_id)
            raise StoreError(str(exc)) from exc

    def update_fields(self, order_id: str, changes: dict[str, Any]) -> None:
        _reject_status_change(changes)
        payload = serialize_changes(changes)
        payload["updated_at"] = time.time()
        try:
            with connect(self._dsn) as conn:
                result = conn.execute(
                    """UPDATE print_orders
                       SET data = data || %s,
                           provider_job_id = COALESCE(%s, provider_job_id),
                           updated_at = NOW()
                       WHERE order_id = %s""",
                    (Jsonb(payload), payload.get("provider_job_id"), order_id),
                )
        except psycopg.Error as exc:
            logger.exception("Failed to update order %s", order_id)
            raise StoreError(str(exc)) from exc
        if result.rowcount == 0:
            raise StoreError(f"order {order_id} not found")

    def claim_submission(self, order_id: str, stale_before: float | None = None) -> bool:
        now = time.time()
        try:
            with connect(self._dsn) as conn:
                result = conn.execute(
                    """UPDATE print_orders
                       SET data = data || jsonb_build_object(
                               'submission_status', 'submitting',
                               'submission_attempts',
                               COALESCE((data->>'submission_attempts')::int, 0) + 1,
                               'updated_at', %s::float8),
                           updated_at = NOW()
                       WHERE order_id = %s
                         AND status = 'paid'
                         AND provider_job_id IS NULL
                         AND (COALESCE(data->>'submission_status', 'pending') = ANY(%s)
                              OR (data->>'submission_status' = 'submitting'
                                  AND (data->>'updated_at')::float8 < %s::float8))""",
                    (now, order_id, list(CLAIMABLE_SUBMISSION_STATES), stale_before),
                )
                return result.rowcount == 1
        except psycopg.Error as exc:
            logger.exception("Submission claim failed for order %s", order_id)
            raise StoreError(str(exc)) from exc

    def mark_refunded(self, order_id: str, transaction_id: str) -> bool:
        now = time.time()
        payload = {"refund_transaction_id": transaction_id, "refunded_at": now, "updated_at": now}
        try:
            with connect(self._dsn) as conn:
                result = conn.execute(
                    """UPDATE print_orders
                       SET data = data || %s, updated_at = NOW()
                       WHERE order_id = %s AND data->>'refund_transaction_id' IS NULL""",
                    (Jsonb(payload), order_id),
                )
                return result.rowcount == 1
        except psycopg.Error as exc:
            logger.exception("Failed to mark order %s refunded", order_id)
            raise StoreError(str(exc)) from exc

    def _many(self, sql: str, params: tuple) -> list[PrintOrder]:
        try:
            with connect(self._dsn) as conn:
                rows = conn.execute(sql, params).fetchall()
        except psycopg.Error as exc:
            logger.exception("Failed to list print orders")
            raise StoreError(str(exc)) from exc
        return [
            PrintOrder.from_dict(r["data"] if isinstance(r["data"], dict) else json.loads(r["data"]))
            for r in rows
        ]

    def list_for_user(
        self,
        user_id: str,
        status: OrderStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[PrintOrder]:
        if status is None:
            return self._many(
                """SELECT data FROM print_orders WHERE user_id = %s
                   ORDER BY created_at DESC LIMIT %s OFFSET %s""",
                (user_id, limit, offset),
            )
        return self._many(
            """SELECT data FROM print_orders WHERE user_id = %s AND status = %s
               ORDER BY created_at DESC LIMIT %s OFFSET %s""",
            (user_id, status.value, limit, offset),
        )

    def list_by_status(self, statuses: Iterable[OrderStatus]) -> list[PrintOrder]:
        return self._many(
            "SELECT data FROM print_orders WHERE status = ANY(%s)",
            ([s.value for s in statuses],),
        )
