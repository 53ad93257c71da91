"""Print order fulfillment — webhook-driven order lifecycle engine."""

__version__ = "0.1.0"
