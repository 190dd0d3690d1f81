"""
Retry backoff policy.
"""

from workgate.constants import DEFAULT_BASE_BACKOFF_MS, DEFAULT_MAX_BACKOFF_MS


def compute_backoff_ms(
    attempts: int,
    base_ms: int = DEFAULT_BASE_BACKOFF_MS,
    max_ms: int = DEFAULT_MAX_BACKOFF_MS,
) -> int:
    """
    Delay before the next attempt after `attempts` failures.

    delay = base_ms * 2^(attempts-1), capped at max_ms. With the defaults
    this gives 2s, 4s, 8s, 16s, 30s, 30s, ...

    Args:
        attempts: Number of failed attempts so far (>= 1).
        base_ms: Delay after the first failure.
        max_ms: Upper bound for any delay.

    Returns:
        Delay in milliseconds.
    """
    if attempts < 1:
        return 0
    # Past this exponent the cap always applies
    exponent = min(attempts - 1, 32)
    return min(base_ms * (2**exponent), max_ms)
