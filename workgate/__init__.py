"""
Reliable Work Ingestion

Idempotent job queue with a leased retry/backoff worker, a per-key admission
limiter for rate-limited dependencies, and the metrics/alert loop observing both.
"""

__version__ = "1.0.0"
