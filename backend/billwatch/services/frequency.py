"""Cadence classification and interval regularity checks."""

from dataclasses import dataclass
from typing import Optional, Sequence

from billwatch.models.detected_bill import Frequency

# Inclusive (low, high) bounds on the mean interval in days.
FREQUENCY_BUCKETS = [
    (Frequency.weekly, 5, 10),
    (Frequency.biweekly, 11, 19),
    (Frequency.monthly, 20, 40),
    (Frequency.bimonthly, 41, 75),
    (Frequency.quarterly, 76, 120),
]


def classify_frequency(mean_interval: Optional[float]) -> Optional[Frequency]:
    """Map a mean interval to a cadence, or None when it falls between buckets."""
    if mean_interval is None:
        return None
    for frequency, low, high in FREQUENCY_BUCKETS:
        if low <= mean_interval <= high:
            return frequency
    return None


@dataclass(frozen=True)
class RegularityResult:
    is_regular: bool
    match_ratio: float
    reason: str = "OK"


def check_regularity(
    intervals: Sequence[int],
    frequency: Frequency,
    occurrence_count: int,
    tolerance: float = 0.5,
    min_ratio: float = 0.4
) -> RegularityResult:
    """
    Score how many intervals land near the canonical day count.

    An interval matches when it is within `tolerance` (as a fraction of the
    canonical days) of it. With fewer than 3 occurrences there is not enough
    data to judge, so the check passes with a neutral ratio.
    """
    if occurrence_count < 3:
        return RegularityResult(True, 0.5, "Too few data points")

    if not intervals:
        return RegularityResult(False, 0.0, "All same day")

    expected_days = frequency.days
    allowed = expected_days * tolerance
    matching = [d for d in intervals if abs(d - expected_days) <= allowed]
    ratio = len(matching) / len(intervals)

    if ratio < min_ratio:
        return RegularityResult(
            False,
            ratio,
            f"Only {round(ratio * 100)}% of intervals match {frequency.value} (expected ~{expected_days}d)"
        )
    return RegularityResult(True, ratio)


def is_tight_cadence(intervals: Sequence[int], frequency: Frequency, tolerance: float = 0.1) -> bool:
    """True when every interval is within `tolerance` of the canonical days."""
    if not intervals:
        return False
    allowed = frequency.days * tolerance
    return all(abs(d - frequency.days) <= allowed for d in intervals)
