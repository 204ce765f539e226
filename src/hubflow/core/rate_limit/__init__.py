"""Rate limiting.

Uses pyrate-limiter in-memory buckets: one blocking record limiter per step
execution, and keyed non-blocking request limiters for webhooks.
"""

from hubflow.core.rate_limit.limiter import NoOpLimiter, RecordRateLimiter, RequestRateLimiter, rate_for

__all__ = ["NoOpLimiter", "RecordRateLimiter", "RequestRateLimiter", "rate_for"]
