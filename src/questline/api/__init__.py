"""Web API of the reconciliation engine."""
