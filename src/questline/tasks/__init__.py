"""Recurring background tasks."""
