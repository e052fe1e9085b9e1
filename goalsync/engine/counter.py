"""Clamped counters and their status bands."""

from enum import Enum


class CounterStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    MODERATE = "moderate"
    HIGH = "high"


def adjust(current, delta):
    """
    Apply a delta to a counter, clamping at zero.

    Args:
        current: Current counter value
        delta: Amount to add (negative to decrement)

    Returns:
        New counter value, never negative
    """
    return max(0, current + delta)


def status_band(count: int) -> CounterStatus:
    """
    Classify a count for display.

    0 is excellent, 1-10 good, 11-20 moderate, anything above is high.
    Advisory only: nothing persisted depends on it.
    """
    if count <= 0:
        return CounterStatus.EXCELLENT
    elif count <= 10:
        return CounterStatus.GOOD
    elif count <= 20:
        return CounterStatus.MODERATE
    else:
        return CounterStatus.HIGH
