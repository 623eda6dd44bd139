"""
Core utilities: error taxonomy, retry/backoff, circuit breaker and rate limiting.

Shared by the ledger RPC client, the price gateway and the sync pipeline.
"""
