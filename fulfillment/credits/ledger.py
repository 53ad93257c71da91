"""Credit Ledger — append-only record of credit balance changes.

The source of truth for a user's balance is the sum of their ledger
entries. ``fulfillment_users.credits_balance`` is a cached projection
that is incremented in the same database transaction as the insert.

Entries carrying a correlation id are unique per
``(user_id, reason, correlation_id)``; ``append_once`` relies on that
constraint so concurrent refunds for one order race safely.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import psycopg

from fulfillment.db import connect
from fulfillment.errors import LedgerError, StoreError
from fulfillment.models import CreditReason, CreditTransaction
from fulfillment.users import InMemoryUserDirectory

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    def append(self, tx: CreditTransaction) -> CreditTransaction: ...

    def append_once(self, tx: CreditTransaction) -> tuple[CreditTransaction, bool]: ...

    def find_by_correlation(
        self, correlation_id: str, reason: CreditReason | None = None
    ) -> list[CreditTransaction]: ...

    def balance(self, user_id: str) -> int: ...

    def history(self, user_id: str, limit: int = 20, offset: int = 0) -> list[CreditTransaction]: ...

    def recompute_projection(self, user_id: str) -> int: ...


def _row_to_tx(row: dict) -> CreditTransaction:
    return CreditTransaction(
        transaction_id=row["transaction_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        reason=CreditReason(row["reason"]),
        description=row["description"],
        correlation_id=row["correlation_id"],
        created_at=row["created_at"],
    )


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryCreditLedger:
    """List-backed ledger that keeps the user directory's balance in step."""

    def __init__(self, users: InMemoryUserDirectory):
        self._users = users
        self._entries: list[CreditTransaction] = []
        self._lock = threading.Lock()

    def _insert(self, tx: CreditTransaction) -> None:
        try:
            new_balance = self._users.adjust_balance(tx.user_id, tx.amount)
        except StoreError as exc:
            raise LedgerError(str(exc)) from exc
        self._entries.append(tx)
        logger.info(
            "Credit %s of %+d for user %s (balance=%d, correlation=%s)",
            tx.reason.value, tx.amount, tx.user_id, new_balance, tx.correlation_id,
        )

    def append(self, tx: CreditTransaction) -> CreditTransaction:
        with self._lock:
            self._insert(tx)
        return tx

    def append_once(self, tx: CreditTransaction) -> tuple[CreditTransaction, bool]:
        if not tx.correlation_id:
            raise ValueError("append_once requires a correlation id")
        with self._lock:
            for existing in self._entries:
                if (
                    existing.user_id == tx.user_id
                    and existing.reason == tx.reason
                    and existing.correlation_id == tx.correlation_id
                ):
                    return existing, False
            self._insert(tx)
        return tx, True

    def find_by_correlation(
        self, correlation_id: str, reason: CreditReason | None = None
    ) -> list[CreditTransaction]:
        with self._lock:
            return [
                e for e in self._entries
                if e.correlation_id == correlation_id and (reason is None or e.reason == reason)
            ]

    def balance(self, user_id: str) -> int:
        with self._lock:
            return sum(e.amount for e in self._entries if e.user_id == user_id)

    def history(self, user_id: str, limit: int = 20, offset: int = 0) -> list[CreditTransaction]:
        with self._lock:
            rows = [e for e in self._entries if e.user_id == user_id]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return rows[offset:offset + limit]

    def recompute_projection(self, user_id: str) -> int:
        balance = self.balance(user_id)
        try:
            self._users.set_balance(user_id, balance)
        except StoreError as exc:
            raise LedgerError(str(exc)) from exc
        return balance


# ---------------------------------------------------------------------------
# Postgres backend
# ---------------------------------------------------------------------------


_INSERT_SQL = """
    INSERT INTO credit_transactions
        (transaction_id, user_id, amount, reason, description, correlation_id, created_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s)
"""

_SELECT_COLUMNS = (
    "transaction_id, user_id, amount, reason, description, correlation_id, created_at"
)


class PostgresCreditLedger:
    """Ledger backed by ``credit_transactions`` + ``fulfillment_users``."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    @staticmethod
    def _params(tx: CreditTransaction) -> tuple:
        return (
            tx.transaction_id,
            tx.user_id,
            tx.amount,
            tx.reason.value,
            tx.description,
            tx.correlation_id,
            tx.created_at,
        )

    @staticmethod
    def _bump_projection(conn: psycopg.Connection, tx: CreditTransaction) -> None:
        result = conn.execute(
            "UPDATE fulfillment_users SET credits_balance = credits_balance + %s WHERE user_id = %s",
            (tx.amount, tx.user_id),
        )
        if result.rowcount != 1:
            raise LedgerError(f"user {tx.user_id} not found")

    def append(self, tx: CreditTransaction) -> CreditTransaction:
        try:
            with connect(self._dsn) as conn, conn.transaction():
                conn.execute(_INSERT_SQL, self._params(tx))
                self._bump_projection(conn, tx)
        except psycopg.Error as exc:
            logger.exception("Failed to append credit transaction for user %s", tx.user_id)
            raise LedgerError(str(exc)) from exc
        logger.info(
            "Credit %s of %+d for user %s (correlation=%s)",
            tx.reason.value, tx.amount, tx.user_id, tx.correlation_id,
        )
        return tx

    def append_once(self, tx: CreditTransaction) -> tuple[CreditTransaction, bool]:
        if not tx.correlation_id:
            raise ValueError("append_once requires a correlation id")
        try:
            with connect(self._dsn) as conn, conn.transaction():
                inserted = conn.execute(
                    _INSERT_SQL.rstrip()
                    + """
                    ON CONFLICT (user_id, reason, correlation_id)
                        WHERE correlation_id IS NOT NULL DO NOTHING
                    RETURNING transaction_id""",
                    self._params(tx),
                ).fetchone()
                if inserted:
                    self._bump_projection(conn, tx)
                    created = True
                else:
                    row = conn.execute(
                        f"""SELECT {_SELECT_COLUMNS} FROM credit_transactions
                            WHERE user_id = %s AND reason = %s AND correlation_id = %s""",
                        (tx.user_id, tx.reason.value, tx.correlation_id),
                    ).fetchone()
                    tx = _row_to_tx(row)
                    created = False
        except psycopg.Error as exc:
            logger.exception("Failed to append credit transaction for user %s", tx.user_id)
            raise LedgerError(str(exc)) from exc
        if created:
            logger.info(
                "Credit %s of %+d for user %s (correlation=%s)",
                tx.reason.value, tx.amount, tx.user_id, tx.correlation_id,
            )
        return tx, created

    def find_by_correlation(
        self, correlation_id: str, reason: CreditReason | None = None
    ) -> list[CreditTransaction]:
        sql = f"SELECT {_SELECT_COLUMNS} FROM credit_transactions WHERE correlation_id = %s"
        params: tuple = (correlation_id,)
        if reason is not None:
            sql += " AND reason = %s"
            params = (correlation_id, reason.value)
        try:
            with connect(self._dsn) as conn:
                rows = conn.execute(sql, params).fetchall()
        except psycopg.Error as exc:
            logger.exception("Failed to query credit transactions for %s", correlation_id)
            raise LedgerError(str(exc)) from exc
        return [_row_to_tx(r) for r in rows]

    def balance(self, user_id: str) -> int:
        try:
            with connect(self._dsn) as conn:
                row = conn.execute(
                    "SELECT COALESCE(SUM(amount), 0) AS balance FROM credit_transactions WHERE user_id = %s",
                    (user_id,),
                ).fetchone()
        except psycopg.Error as exc:
            raise LedgerError(str(exc)) from exc
        return int(row["balance"])

    def history(self, user_id: str, limit: int = 20, offset: int = 0) -> list[CreditTransaction]:
        try:
            with connect(self._dsn) as conn:
                rows = conn.execute(
                    f"""SELECT {_SELECT_COLUMNS} FROM credit_transactions
                        WHERE user_id = %s ORDER BY created_at DESC LIMIT %s OFFSET %s""",
                    (user_id, limit, offset),
                ).fetchall()
        except psycopg.Error as exc:
            raise LedgerError(str(exc)) from exc
        return [_row_to_tx(r) for r in rows]

    def recompute_projection(self, user_id: str) -> int:
        try:
            with connect(self._dsn) as conn, conn.transaction():
                row = conn.execute(
                    """UPDATE fulfillment_users
                       SET credits_balance = (
                           SELECT COALESCE(SUM(amount), 0) FROM credit_transactions WHERE user_id = %s
                       )
                       WHERE user_id = %s
                       RETURNING credits_balance""",
                    (user_id, user_id),
                ).fetchone()
        except psycopg.Error as exc:
            raise LedgerError(str(exc)) from exc
        if not row:
            raise LedgerError(f"user {user_id} not found")
        return int(row["credits_balance"])
