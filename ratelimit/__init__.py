"""Sliding-window rate limiting and inbound admission control."""
from ratelimit.limiter import (
    RateLimiter, RedisRateLimiter, InMemoryRateLimiter, create_rate_limiter,
)
from ratelimit.admission import AdmissionController

__all__ = [
    "RateLimiter", "RedisRateLimiter", "InMemoryRateLimiter", "create_rate_limiter",
    "AdmissionController",
]
