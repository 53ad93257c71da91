"""User directory — the read side of user records.

The engine only needs a user's email, name, preferred language and the
cached credit balance projection. Balance writes happen inside the
credit ledger, atomically with the ledger insert.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import psycopg

from fulfillment.db import connect
from fulfillment.errors import StoreError
from fulfillment.models import User

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    def get(self, user_id: str) -> User | None: ...


class InMemoryUserDirectory:
    """Dict-backed users. The in-memory ledger adjusts balances here."""

    def __init__(self, users: list[User] | None = None) -> None:
        self._users: dict[str, User] = {u.user_id: u for u in users or []}
        self._lock = threading.Lock()

    def add(self, user: User) -> User:
        with self._lock:
            self._users[user.user_id] = user
        return user

    def get(self, user_id: str) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            return User(**vars(user))

    def adjust_balance(self, user_id: str, delta: int) -> int:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise StoreError(f"user {user_id} not found")
            user.credits_balance += delta
            return user.credits_balance

    def set_balance(self, user_id: str, balance: int) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise StoreError(f"user {user_id} not found")
            user.credits_balance = balance


class PostgresUserDirectory:
    """Users from the ``fulfillment_users`` table."""

    def __init__(self, dsn: str):
        self._dsn = dsn

    def get(self, user_id: str) -> User | None:
        try:
            with connect(self._dsn) as conn:
                row = conn.execute(
                    """SELECT user_id, email, first_name, preferred_language, credits_balance
                       FROM fulfillment_users WHERE user_id = %s""",
                    (user_id,),
                ).fetchone()
        except psycopg.Error as exc:
            logger.exception("Failed to load user %s", user_id)
            raise StoreError(str(exc)) from exc
        return User(**row) if row else None
