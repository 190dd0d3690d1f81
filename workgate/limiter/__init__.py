"""
Admission limiter module.
Per-key token-window rate limiting with FIFO queuing.
"""

from workgate.limiter.http import RateLimitedClient, host_key
from workgate.limiter.limiter import AdmissionLimiter
from workgate.limiter.store import (
    MemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)

__all__ = [
    "AdmissionLimiter",
    "RateLimitStore",
    "MemoryRateLimitStore",
    "RedisRateLimitStore",
    "RateLimitedClient",
    "host_key",
]
