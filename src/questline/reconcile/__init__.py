"""Reconciliation of source events into the canonical series/event model."""
