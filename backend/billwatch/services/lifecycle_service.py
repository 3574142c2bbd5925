"""
Incremental lifecycle tracking for persisted bills.

Each scan walks the transactions that arrived since a bill was last seen and
moves the bill forward: cycles get marked paid, amount changes are recorded,
and bills that stop recurring go dormant. Dormant bills are kept as history
and only come back through a full regeneration.
"""

import enum
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from billwatch.config import DetectionConfig
from billwatch.models.detected_bill import CycleStatus, DetectedBill, LifecycleState
from billwatch.services.deduplication_service import Occurrence, sort_occurrences
from billwatch.services.scoring import is_active, next_predicted_date, to_money


class LifecycleEventType(str, enum.Enum):
    paid = "paid"
    amount_drift = "amount_drift"
    observed = "observed"
    dormant = "dormant"
    cycle_reset = "cycle_reset"


@dataclass(frozen=True)
class LifecycleEvent:
    bill_id: str
    merchant_name: str
    type: LifecycleEventType
    on: date
    amount: Optional[Decimal] = None
    delta: Optional[Decimal] = None


def nearest_cycle_date(predicted: date, observed: date, interval_days: int) -> date:
    """Roll `predicted` forward by whole cycles to the one closest to `observed`."""
    if observed <= predicted:
        return predicted
    cycles = round((observed - predicted).days / interval_days)
    return predicted + timedelta(days=cycles * interval_days)


def assign_occurrences(
    bills: Sequence[DetectedBill],
    occurrences: Sequence[Occurrence]
) -> Dict[str, List[Occurrence]]:
    """
    Route a merchant's occurrences to the bills sharing its key.
    Split siblings each take the occurrences closest to their expected amount.
    """
    assigned: Dict[str, List[Occurrence]] = {bill.id: [] for bill in bills}
    if not bills:
        return assigned
    if len(bills) == 1:
        assigned[bills[0].id] = list(occurrences)
        return assigned

    ordered = sorted(bills, key=lambda b: (b.expected_amount, b.merchant_name))
    for occurrence in occurrences:
        closest = min(
            ordered,
            key=lambda b: abs(occurrence.amount - float(b.expected_amount)) / max(float(b.expected_amount), 0.01)
        )
        assigned[closest.id].append(occurrence)
    return assigned


def advance_bill(
    bill: DetectedBill,
    occurrences: Sequence[Occurrence],
    now: date,
    config: DetectionConfig,
    amount_cap: Optional[float] = None
) -> List[LifecycleEvent]:
    """
    Apply new occurrences and the passage of time to one bill, in place.

    `amount_cap` bounds the relative amount difference a charge may have and
    still belong to this bill. It is only set when split siblings share the
    merchant, a lone bill takes any on-cadence charge.
    """
    if bill.lifecycle_state == LifecycleState.dormant:
        return []

    events: List[LifecycleEvent] = []
    interval = bill.frequency.days
    window = config.lifecycle_match_window_days
    tolerance = config.lifecycle_amount_tolerance

    fresh = [
        o for o in sort_occurrences(occurrences)
        if bill.last_transaction_date is None or o.date > bill.last_transaction_date
    ]

    for occurrence in fresh:
        predicted = nearest_cycle_date(bill.next_predicted_date or occurrence.date, occurrence.date, interval)
        offset = abs((occurrence.date - predicted).days)
        if offset > interval * config.regularity_tolerance:
            # Off-cadence purchase at the same merchant
            continue

        expected = float(bill.expected_amount)
        if expected <= 0:
            continue
        delta = occurrence.amount - expected
        if amount_cap is not None and abs(delta) / expected > amount_cap:
            # Belongs to a sibling bill's amount cluster
            continue
        amount_matches = abs(delta) / expected <= tolerance

        if not amount_matches:
            bill.expected_amount = to_money(occurrence.amount)
            bill.amount_drift = to_money(delta)
            bill.cycle_status = CycleStatus.paid
            bill.last_paid_date = occurrence.date
            events.append(LifecycleEvent(
                bill.id, bill.merchant_name, LifecycleEventType.amount_drift,
                occurrence.date, to_money(occurrence.amount), to_money(delta)
            ))
        elif offset <= window:
            bill.cycle_status = CycleStatus.paid
            bill.last_paid_date = occurrence.date
            events.append(LifecycleEvent(
                bill.id, bill.merchant_name, LifecycleEventType.paid,
                occurrence.date, to_money(occurrence.amount)
            ))
        else:
            events.append(LifecycleEvent(
                bill.id, bill.merchant_name, LifecycleEventType.observed,
                occurrence.date, to_money(occurrence.amount)
            ))

        bill.last_transaction_date = occurrence.date
        bill.next_predicted_date = occurrence.date + timedelta(days=interval)

    last_seen = bill.last_transaction_date
    if last_seen is not None and not is_active(last_seen, bill.frequency, now, config.active_grace_days):
        bill.lifecycle_state = LifecycleState.dormant
        bill.is_active = False
        events.append(LifecycleEvent(bill.id, bill.merchant_name, LifecycleEventType.dormant, now))
        return events

    rolled = False
    if last_seen is not None and (bill.next_predicted_date is None or bill.next_predicted_date <= now):
        bill.next_predicted_date = next_predicted_date(last_seen, bill.frequency, now)
        rolled = True

    if bill.cycle_status == CycleStatus.paid and (
        rolled
        or (bill.next_predicted_date is not None and now >= bill.next_predicted_date - timedelta(days=window))
    ):
        bill.cycle_status = CycleStatus.upcoming
        events.append(LifecycleEvent(bill.id, bill.merchant_name, LifecycleEventType.cycle_reset, now))

    return events


def advance_bills(
    bills: Sequence[DetectedBill],
    occurrences: Sequence[Occurrence],
    now: date,
    config: DetectionConfig
) -> List[LifecycleEvent]:
    """Advance every bill sharing one merchant key."""
    live = [b for b in bills if b.lifecycle_state != LifecycleState.dormant]
    assigned = assign_occurrences(live, occurrences)
    amount_cap = config.cluster_gap_ratio if len(live) > 1 else None

    events: List[LifecycleEvent] = []
    for bill in live:
        events.extend(advance_bill(bill, assigned[bill.id], now, config, amount_cap))
    return events
