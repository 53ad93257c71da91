"""Outbound provider API clients (payments, printing)."""
