"""
Rate limiting package for the security service.

Holds the in-memory sliding-window limiter that enforces per-identifier
request budgets and temporary blocks once a budget is exhausted.
"""
