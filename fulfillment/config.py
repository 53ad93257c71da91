"""Fulfillment service configuration."""

from __future__ import annotations

import functools
import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings (prefix ``FULFILLMENT_``)."""

    # Storage
    database_url: str = "postgresql://localhost:5432/fulfillment"
    redis_url: str = "redis://localhost:6379/0"
    # memory keeps orders, users and credits in-process with an empty user
    # directory; for tests and local runs only
    storage_backend: str = "postgres"  # postgres | memory
    idempotency_backend: str = "postgres"  # postgres | redis | memory

    # Payment provider (Stripe)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_base: str = "https://api.stripe.com/v1"
    stripe_timestamp_tolerance: int = 300

    # Print provider (Lulu)
    lulu_api_key: str = ""
    lulu_api_base: str = "https://api.lulu.com/"
    lulu_webhook_secret: str = ""
    lulu_pod_package_id: str = ""
    lulu_webhook_url: str = ""

    # Email
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@pettales.ai"
    web_url: str = "http://localhost:3000"
    support_email: str = "support@pettales.ai"

    # Processing
    max_transition_attempts: int = 3
    max_submission_retries: int = 3
    log_level: str = "INFO"

    model_config = {"env_prefix": "FULFILLMENT_", "env_file": ".env", "extra": "ignore"}


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install a single timestamped stream handler on the root logger."""
    root = logging.getLogger()
    if any(getattr(h, "_fulfillment", False) for h in root.handlers):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    handler._fulfillment = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())
