"""
Scoring of merchant statistics into bills or rejections.

Every merchant that reaches this stage leaves as either a BillCandidate or a
RejectionRecord with a specific reason. Nothing is dropped silently.
"""

from collections import Counter
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence, Union

from billwatch.config import DetectionConfig
from billwatch.models.detected_bill import Frequency, LifecycleState
from billwatch.schemas.detected_bill import BillCandidate, RejectionRecord
from billwatch.services.frequency import classify_frequency, check_regularity, is_tight_cadence
from billwatch.services.statistics import MerchantStats

CENTS = Decimal("0.01")


def to_money(value: float) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def primary_category(categories: Iterable[Optional[str]]) -> Optional[str]:
    """Most common non-empty category tag, ties broken alphabetically."""
    counts = Counter(c.strip().lower() for c in categories if c and c.strip())
    if not counts:
        return None
    return min(counts, key=lambda c: (-counts[c], c))


def is_non_bill_category(category: Optional[str], config: DetectionConfig) -> bool:
    """Exact match of the lower-cased tag against the deny-list."""
    return category is not None and category in config.non_bill_categories


def activity_cutoff_days(frequency: Frequency, grace_days: int = 60) -> int:
    """Days of silence after which a bill stops counting as active."""
    return max(grace_days, 2 * frequency.days)


def is_active(last_seen: date, frequency: Frequency, now: date, grace_days: int = 60) -> bool:
    return (now - last_seen).days <= activity_cutoff_days(frequency, grace_days)


def next_predicted_date(last_seen: date, frequency: Frequency, now: date) -> date:
    """First date after `now` on the canonical cadence from `last_seen`."""
    step = timedelta(days=frequency.days)
    next_date = last_seen + step
    if next_date <= now:
        missed = (now - next_date).days // frequency.days + 1
        next_date += step * missed
    return next_date


def expected_amount(amounts: Sequence[float]) -> Decimal:
    """Median of the three most recent amounts."""
    recent = sorted(amounts[-3:])
    return to_money(recent[len(recent) // 2])


def confidence_score(cv: float, occurrence_count: int, match_ratio: float, tight_cadence: bool) -> int:
    confidence = 50
    if cv < 0.05:
        confidence += 25
    elif cv < 0.15:
        confidence += 20
    elif cv < 0.25:
        confidence += 10
    if occurrence_count >= 8:
        confidence += 10
    elif occurrence_count >= 5:
        confidence += 5
    if match_ratio > 0.8:
        confidence += 10
    if tight_cadence:
        confidence += 5
    return min(confidence, 99)


def evaluate_merchant(
    stats: MerchantStats,
    categories: Iterable[Optional[str]],
    now: date,
    config: DetectionConfig,
    merchant_pattern: Optional[str] = None
) -> Union[BillCandidate, RejectionRecord]:
    """
    Apply the detection gates to one merchant and score it.

    Gates run in a fixed order so a merchant failing several of them is
    always rejected for the same reason.
    """
    count = stats.occurrence_count

    def reject(reason: str) -> RejectionRecord:
        return RejectionRecord(merchant=stats.merchant, reason=reason, occurrence_count=count)

    if count < config.min_occurrences:
        return reject(f"Insufficient occurrences ({count} < {config.min_occurrences})")

    if stats.mean_interval is None:
        return reject("No measurable interval between occurrences")

    key = (merchant_pattern or stats.merchant).lower()
    if key in config.known_restaurants:
        return reject("Known restaurant/dining establishment")

    cv = stats.cv
    category = primary_category(categories)
    if is_non_bill_category(category, config) and not cv < config.category_override_cv:
        return reject(f'Category "{category}" is not a bill/subscription')

    frequency = classify_frequency(stats.mean_interval)
    if frequency is None:
        return reject(f"Interval {stats.mean_interval:.1f}d doesn't match known frequency")

    consistent = cv < config.consistent_cv
    moderate = cv < config.moderate_cv and count >= config.moderate_cv_min_occurrences
    if not consistent and not moderate:
        return reject(
            f"Amount too variable (CV={cv:.2f}, avg=${stats.mean_amount:.2f}, std=${stats.stddev:.2f})"
        )

    regularity = check_regularity(
        stats.intervals,
        frequency,
        count,
        tolerance=config.regularity_tolerance,
        min_ratio=config.regularity_min_ratio,
    )
    if not regularity.is_regular:
        return reject(f"Irregular intervals: {regularity.reason}")

    active = is_active(stats.last_seen, frequency, now, config.active_grace_days)
    return BillCandidate(
        merchant_name=stats.merchant,
        merchant_pattern=merchant_pattern or stats.merchant,
        expected_amount=expected_amount(stats.amounts),
        frequency=frequency,
        next_predicted_date=next_predicted_date(stats.last_seen, frequency, now),
        last_transaction_date=stats.last_seen,
        confidence_score=confidence_score(
            cv, count, regularity.match_ratio, is_tight_cadence(stats.intervals, frequency)
        ),
        is_active=active,
        lifecycle_state=LifecycleState.active if active else LifecycleState.dormant,
        occurrence_count=count,
    )


def monthly_equivalent(amount: Decimal, frequency: Frequency) -> Decimal:
    """Amount normalised to a 30-day month."""
    return amount * 30 / frequency.days
