"""PostgreSQL connection and schema helpers."""

from __future__ import annotations

import logging

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


def connect(dsn: str) -> psycopg.Connection:
    return psycopg.connect(dsn, autocommit=True, row_factory=dict_row)


def init_tables(dsn: str) -> None:
    """Create fulfillment tables if they don't exist.  Idempotent."""
    with connect(dsn) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS fulfillment_users (
                user_id            TEXT PRIMARY KEY,
                email              TEXT NOT NULL,
                first_name         TEXT NOT NULL DEFAULT '',
                preferred_language TEXT NOT NULL DEFAULT 'en',
                credits_balance    INT NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS print_orders (
                order_id           TEXT PRIMARY KEY,
                user_id            TEXT NOT NULL,
                status             TEXT NOT NULL,
                provider_job_id    TEXT UNIQUE,
                payment_session_id TEXT UNIQUE,
                data               JSONB NOT NULL,
                created_at         TIMESTAMPTZ DEFAULT now(),
                updated_at         TIMESTAMPTZ DEFAULT now()
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS print_orders_user_idx ON print_orders (user_id, created_at DESC)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS print_orders_status_idx ON print_orders (status)"
        )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credit_transactions (
                transaction_id TEXT PRIMARY KEY,
                user_id        TEXT NOT NULL,
                amount         INT NOT NULL,
                reason         TEXT NOT NULL,
                description    TEXT NOT NULL DEFAULT '',
                correlation_id TEXT,
                created_at     DOUBLE PRECISION NOT NULL
            )
        """)
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS credit_transactions_correlation_uq
                ON credit_transactions (user_id, reason, correlation_id)
                WHERE correlation_id IS NOT NULL
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS webhook_events (
                provider          TEXT NOT NULL,
                provider_event_id TEXT NOT NULL,
                outcome           TEXT NOT NULL,
                order_id          TEXT,
                first_seen_at     DOUBLE PRECISION NOT NULL,
                PRIMARY KEY (provider, provider_event_id)
            )
        """)
    logger.info("Fulfillment tables initialized")
