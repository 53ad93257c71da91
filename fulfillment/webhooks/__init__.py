"""Webhook inbound system.

Receives payment and print provider webhooks. Each webhook is
signature-verified, deduplicated and applied to its order exactly once.
"""
