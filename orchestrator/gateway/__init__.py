"""Scoring gateway: resilient fan-out to remote scoring providers.

Components:
  - Circuit breaker (per provider, shared store)
  - Retry policy (exponential backoff, jitter, deadline-aware)
  - Tenant rate limiter (fixed window per tenant)
  - Result cache (normalized input, TTL)
  - Parallel invoker and aggregator
"""
