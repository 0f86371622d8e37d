# Overview: Expected-vs-actual comparison for lottery ticket counts.

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class VarianceRecord:
    """Signed mismatch: positive difference is a surplus, negative a shortage."""
    expected: int
    actual: int
    difference: int


def detect_variance(expected: int, actual: int) -> VarianceRecord | None:
    """Return a VarianceRecord iff the counts differ; persistence is the caller's job."""
    if expected == actual:
        return None
    return VarianceRecord(expected=expected, actual=actual, difference=actual - expected)


def resolve_actual_count(expected: int, tracked_count: int | None) -> int:
    """
    Actual sold count for a pack.

    Falls back to expected when no per-ticket sales were tracked, so packs
    without scan tracking never report a variance. A genuine zero-sales
    shortage is therefore indistinguishable from untracked sales.
    """
    if tracked_count and tracked_count > 0:
        return tracked_count
    return expected
