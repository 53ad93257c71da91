"""Credit ledger and refund compensation."""
