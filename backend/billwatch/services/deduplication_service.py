"""
Deduplication of near-simultaneous postings.

A bill paid from two linked accounts shows up as two charges a day or two
apart. Left alone, those pairs halve the measured interval and inflate the
amount variance, so they are collapsed before any statistics are computed.
"""

from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class Occurrence:
    """A single charge at a merchant."""
    date: date
    amount: float
    transaction_id: Optional[str] = None


def sort_occurrences(occurrences: Sequence[Occurrence]) -> List[Occurrence]:
    """Chronological order with a stable tie-break so repeated runs agree."""
    return sorted(occurrences, key=lambda o: (o.date, o.amount, o.transaction_id or ""))


def is_duplicate_posting(
    previous: Occurrence,
    current: Occurrence,
    window_days: int = 5,
    amount_ratio: float = 0.2,
    amount_floor: float = 5.0
) -> bool:
    """
    Check whether `current` repeats `previous`.
    Both the date gap and the amount difference have to be small.
    """
    gap = (current.date - previous.date).days
    if gap > window_days:
        return False
    tolerance = max(abs(previous.amount) * amount_ratio, amount_floor)
    return abs(current.amount - previous.amount) < tolerance


def dedupe_occurrences(
    occurrences: Sequence[Occurrence],
    window_days: int = 5,
    amount_ratio: float = 0.2,
    amount_floor: float = 5.0
) -> List[Occurrence]:
    """
    Collapse duplicate postings into one occurrence per billing cycle.

    Single greedy pass over the sorted list: each occurrence is compared with
    the last kept one only, and the earlier posting is kept.
    """
    ordered = sort_occurrences(occurrences)
    if len(ordered) < 2:
        return ordered

    kept = [ordered[0]]
    for occurrence in ordered[1:]:
        if is_duplicate_posting(kept[-1], occurrence, window_days, amount_ratio, amount_floor):
            continue
        kept.append(occurrence)
    return kept
