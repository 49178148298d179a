"""
Utility functions shared by the ChatCore components.
"""

import time


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def backoff_delay(fail_count: int, base_seconds: float = 1.0, max_seconds: float = 300.0) -> float:
    """
    Seconds to wait before retrying a send that has failed fail_count times.

    Args:
        fail_count: Number of failures recorded for the request
        base_seconds: Length of one backoff unit (2^n units are waited)
        max_seconds: Ceiling applied to the computed delay

    Returns:
        min(2^fail_count * base_seconds, max_seconds)
    """
    if fail_count < 0:
        raise ValueError("fail_count must be non-negative")
    # Cap the exponent so huge fail counts cannot overflow float math
    exponent = min(fail_count, 64)
    return min((2 ** exponent) * base_seconds, max_seconds)
