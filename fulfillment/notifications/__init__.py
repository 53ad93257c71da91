"""User-facing order status emails."""
