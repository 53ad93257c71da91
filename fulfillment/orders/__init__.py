"""Print orders: data store, state machine and print job submission."""
