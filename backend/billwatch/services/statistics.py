"""Per-merchant amount and interval statistics."""

import math
import statistics as stats_lib
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence

from billwatch.services.deduplication_service import Occurrence, sort_occurrences


@dataclass
class MerchantStats:
    """Statistics for one merchant (or one amount cluster of a merchant)."""
    merchant: str
    occurrences: List[Occurrence]
    mean_amount: float
    stddev: float
    min_amount: float
    max_amount: float
    intervals: List[int] = field(default_factory=list)
    mean_interval: Optional[float] = None

    @property
    def occurrence_count(self) -> int:
        return len(self.occurrences)

    @property
    def first_seen(self) -> date:
        return self.occurrences[0].date

    @property
    def last_seen(self) -> date:
        return self.occurrences[-1].date

    @property
    def amounts(self) -> List[float]:
        return [o.amount for o in self.occurrences]

    @property
    def cv(self) -> float:
        """Coefficient of variation. Infinite when the mean is not positive."""
        if self.mean_amount <= 0:
            return math.inf
        return self.stddev / self.mean_amount


def sample_stddev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return stats_lib.stdev(values)


def compute_intervals(dates: Sequence[date]) -> List[int]:
    """Whole-day gaps between consecutive dates, same-day repeats dropped."""
    ordered = sorted(dates)
    intervals = []
    for previous, current in zip(ordered, ordered[1:]):
        days = (current - previous).days
        if days > 0:
            intervals.append(days)
    return intervals


def compute_merchant_stats(merchant: str, occurrences: Sequence[Occurrence]) -> MerchantStats:
    if not occurrences:
        raise ValueError(f"No occurrences for merchant {merchant!r}")

    ordered = sort_occurrences(occurrences)
    amounts = [o.amount for o in ordered]
    intervals = compute_intervals([o.date for o in ordered])

    return MerchantStats(
        merchant=merchant,
        occurrences=ordered,
        mean_amount=stats_lib.fmean(amounts),
        stddev=sample_stddev(amounts),
        min_amount=min(amounts),
        max_amount=max(amounts),
        intervals=intervals,
        mean_interval=stats_lib.fmean(intervals) if intervals else None,
    )
