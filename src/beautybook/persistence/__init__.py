"""Persistence — booking store, event log, state snapshot."""
