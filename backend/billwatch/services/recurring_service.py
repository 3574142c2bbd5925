"""Service for recurring bill detection and lifecycle management."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billwatch.config import DetectionConfig, settings
from billwatch.database import SessionLocal
from billwatch.models.detected_bill import DetectedBill, LifecycleState
from billwatch.schemas.detected_bill import (
    BillCandidate,
    RegenerateResult,
    RegenerateSummary,
    RejectionRecord,
    RunStatus,
    ScanResult,
    ScanUserResult,
)
from billwatch.schemas.split import ClusterSummary
from billwatch.services.deduplication_service import Occurrence, dedupe_occurrences
from billwatch.services.lifecycle_service import LifecycleEventType, advance_bills
from billwatch.services.normalization import normalize_merchant
from billwatch.services.pattern_splitter import (
    ClusterSplitAdvisor,
    cluster_by_amount,
    describe_cluster,
    get_split_advisor,
    split_display_name,
    split_group_id,
)
from billwatch.services.scoring import evaluate_merchant, monthly_equivalent, to_money
from billwatch.services.statistics import compute_merchant_stats
from billwatch.services.transaction_feed import (
    TransactionRecord,
    has_connected_accounts,
    list_active_user_ids,
    load_expense_transactions,
)

logger = logging.getLogger(__name__)

UNRESOLVABLE_MERCHANT = "unresolvable merchant identity"


@dataclass
class DetectionOutcome:
    """Everything one detection pass derived from a user's transactions."""
    bills: List[BillCandidate] = field(default_factory=list)
    rejected: List[RejectionRecord] = field(default_factory=list)
    occurrences: Dict[str, List[Occurrence]] = field(default_factory=dict)
    total_transactions: int = 0

    @property
    def total_merchants(self) -> int:
        return len(self.occurrences)


def group_by_merchant(
    transactions: Sequence[TransactionRecord]
) -> Tuple[Dict[str, List[TransactionRecord]], List[RejectionRecord]]:
    """Group expense transactions by merchant key."""
    groups: Dict[str, List[TransactionRecord]] = defaultdict(list)
    unresolved: Dict[str, int] = defaultdict(int)

    for txn in transactions:
        if txn.amount <= 0:
            continue
        key = normalize_merchant(txn.raw_description, txn.merchant_hint)
        if key is None:
            unresolved[(txn.raw_description or "").strip()] += 1
            continue
        groups[key].append(txn)

    rejected = [
        RejectionRecord(merchant=raw or "(blank)", reason=UNRESOLVABLE_MERCHANT, occurrence_count=count)
        for raw, count in sorted(unresolved.items())
    ]
    return dict(groups), rejected


def _clusters_overlap(clusters: Sequence[Sequence[Occurrence]]) -> bool:
    """
    True when every cluster runs alongside at least one other.
    A price change produces clusters that follow each other instead.
    """
    spans = [(c[0].date, c[-1].date) for c in clusters]
    for i, (start, end) in enumerate(spans):
        if not any(start <= other_end and other_start <= end
                   for j, (other_start, other_end) in enumerate(spans) if j != i):
            return False
    return True


async def _detect_split(
    key: str,
    deduped: List[Occurrence],
    categories: List[Optional[str]],
    user_id: str,
    now: date,
    config: DetectionConfig,
    advisor: ClusterSplitAdvisor
) -> Optional[Tuple[List[BillCandidate], List[RejectionRecord]]]:
    """Bills for a multi-obligation merchant, or None when it is a single pattern."""
    clusters = cluster_by_amount(deduped, config.cluster_gap_ratio)
    if len(clusters) < 2:
        return None

    qualifying = []
    leftovers = []
    for cluster in clusters:
        stats = compute_merchant_stats(key, cluster)
        result = evaluate_merchant(stats, categories, now, config, key)
        if isinstance(result, BillCandidate):
            qualifying.append((stats, result))
        else:
            leftovers.append(stats)

    if len(qualifying) < 2 or not _clusters_overlap([s.occurrences for s, _ in qualifying]):
        return None

    summaries = [
        ClusterSummary(
            amount=round(stats.mean_amount, 2),
            frequency=candidate.frequency,
            occurrence_count=stats.occurrence_count,
        )
        for stats, candidate in qualifying
    ]
    verdict = await advisor.advise(key, summaries)
    if not verdict.should_split:
        logger.info(f"Not splitting {key}: {verdict.reasoning}")
        return None

    group_id = split_group_id(user_id, key)
    bills = []
    used_names = set()
    for index, ((stats, candidate), summary, label) in enumerate(
        zip(qualifying, summaries, verdict.patterns), start=1
    ):
        name = split_display_name(key, label.description.strip() or describe_cluster(summary))
        if name.lower() in used_names:
            name = f"{name} {index}"
        used_names.add(name.lower())
        bills.append(candidate.model_copy(update={"merchant_name": name, "split_group_id": group_id}))

    rejected = [
        RejectionRecord(
            merchant=key,
            reason=f"Amount cluster ~${stats.mean_amount:.2f} is not recurring",
            occurrence_count=stats.occurrence_count,
        )
        for stats in leftovers
    ]
    return bills, rejected


async def detect_merchant(
    key: str,
    transactions: Sequence[TransactionRecord],
    user_id: str,
    now: date,
    config: DetectionConfig,
    advisor: ClusterSplitAdvisor
) -> Tuple[List[Occurrence], List[BillCandidate], List[RejectionRecord]]:
    """Run dedup, statistics, scoring and splitting for one merchant key."""
    occurrences = [Occurrence(t.date, t.amount, t.id) for t in transactions]
    deduped = dedupe_occurrences(
        occurrences,
        window_days=config.dedup_window_days,
        amount_ratio=config.dedup_amount_ratio,
        amount_floor=config.dedup_amount_floor,
    )
    categories = [t.category_tag for t in transactions]

    split = await _detect_split(key, deduped, categories, user_id, now, config, advisor)
    if split is not None:
        bills, rejected = split
        return deduped, bills, rejected

    result = evaluate_merchant(compute_merchant_stats(key, deduped), categories, now, config, key)
    if isinstance(result, BillCandidate):
        return deduped, [result], []
    return deduped, [], [result]


async def detect_bills(
    transactions: Sequence[TransactionRecord],
    now: date,
    user_id: str,
    advisor: Optional[ClusterSplitAdvisor] = None,
    config: Optional[DetectionConfig] = None
) -> DetectionOutcome:
    """
    Derive the full bill set from a user's expense history.

    Pure with respect to storage: the same transactions, `now` and advisor
    answers always give the same outcome. A failure on one merchant is
    recorded as a rejection and the rest of the batch continues.
    """
    config = config or DetectionConfig.from_settings()
    advisor = advisor or get_split_advisor(config.split_amount_ratio)

    groups, rejected = group_by_merchant(transactions)
    outcome = DetectionOutcome(rejected=rejected, total_transactions=len(transactions))

    for key in sorted(groups):
        try:
            deduped, bills, merchant_rejections = await detect_merchant(
                key, groups[key], user_id, now, config, advisor
            )
        except Exception as e:
            logger.exception(f"Detection failed for merchant {key}")
            outcome.rejected.append(RejectionRecord(
                merchant=key,
                reason=f"Detection error: {e}",
                occurrence_count=len(groups[key]),
            ))
            continue
        outcome.occurrences[key] = deduped
        outcome.bills.extend(bills)
        outcome.rejected.extend(merchant_rejections)

    outcome.bills.sort(key=lambda b: (-b.confidence_score, -b.expected_amount, b.merchant_name))
    return outcome


def build_summary(outcome: DetectionOutcome) -> RegenerateSummary:
    active = [b for b in outcome.bills if b.is_active]
    monthly_total = sum(
        (monthly_equivalent(b.expected_amount, b.frequency) for b in active),
        Decimal("0")
    )
    return RegenerateSummary(
        total_transactions=outcome.total_transactions,
        total_merchants=outcome.total_merchants,
        active_bills=len(active),
        dormant_bills=len(outcome.bills) - len(active),
        monthly_total=to_money(float(monthly_total)),
    )


def bill_from_candidate(user_id: str, candidate: BillCandidate) -> DetectedBill:
    return DetectedBill(
        user_id=user_id,
        merchant_name=candidate.merchant_name,
        merchant_pattern=candidate.merchant_pattern,
        expected_amount=candidate.expected_amount,
        frequency=candidate.frequency,
        next_predicted_date=candidate.next_predicted_date,
        last_transaction_date=candidate.last_transaction_date,
        confidence_score=candidate.confidence_score,
        is_active=candidate.is_active,
        lifecycle_state=candidate.lifecycle_state,
        auto_detected=candidate.auto_detected,
        split_group_id=candidate.split_group_id,
    )


def replace_bills(db: Session, user_id: str, candidates: Sequence[BillCandidate]) -> None:
    """
    Swap the user's whole bill set for `candidates` in one transaction.
    Nothing is visible until the commit, and a failure rolls everything back.
    """
    try:
        db.query(DetectedBill).filter(DetectedBill.user_id == user_id).delete(synchronize_session=False)
        db.add_all([bill_from_candidate(user_id, c) for c in candidates])
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise


def _load_user_transactions(db: Session, user_id: str) -> Tuple[Optional[str], List[TransactionRecord]]:
    if not has_connected_accounts(db, user_id):
        return "No connected accounts found", []
    transactions = load_expense_transactions(db, user_id)
    if not transactions:
        return "No transactions found", []
    return None, transactions


async def regenerate(
    db: Session,
    user_id: str,
    dry_run: bool = False,
    now: Optional[date] = None,
    advisor: Optional[ClusterSplitAdvisor] = None,
    config: Optional[DetectionConfig] = None
) -> RegenerateResult:
    """
    Recompute a user's bills from scratch.

    With `dry_run` the computed bills and rejections are returned and nothing
    is written. Otherwise the stored bill set is replaced atomically.
    """
    now = now or date.today()

    missing, transactions = _load_user_transactions(db, user_id)
    if missing:
        return RegenerateResult(status=RunStatus.no_data, user_id=user_id, dry_run=dry_run, error=missing)

    outcome = await detect_bills(transactions, now, user_id, advisor, config)
    summary = build_summary(outcome)
    result = RegenerateResult(
        status=RunStatus.ok,
        user_id=user_id,
        dry_run=dry_run,
        detected=len(outcome.bills),
        bills=outcome.bills,
        rejected=outcome.rejected,
        summary=summary,
    )
    if dry_run:
        return result

    try:
        replace_bills(db, user_id, outcome.bills)
    except SQLAlchemyError as e:
        logger.error(f"Failed to store bills for user {user_id}: {e}")
        result.status = RunStatus.failed
        result.error = f"Failed to store bills: {e}"
        return result

    result.summary.old_records_cleared = True
    logger.info(f"Regenerated {len(outcome.bills)} bills for user {user_id}")
    return result


async def scan(
    db: Session,
    user_id: str,
    now: Optional[date] = None,
    advisor: Optional[ClusterSplitAdvisor] = None,
    config: Optional[DetectionConfig] = None
) -> ScanUserResult:
    """
    Incremental lifecycle pass for one user.

    Existing bills are advanced in place (paid, drift, dormant). Newly
    detected active patterns whose merchant is not tracked yet are added.
    Nothing is deleted.
    """
    now = now or date.today()
    config = config or DetectionConfig.from_settings()

    missing, transactions = _load_user_transactions(db, user_id)
    if missing:
        return ScanUserResult(status=RunStatus.no_data, user_id=user_id, error=missing)

    outcome = await detect_bills(transactions, now, user_id, advisor, config)
    result = ScanUserResult(status=RunStatus.ok, user_id=user_id)

    try:
        existing = db.query(DetectedBill).filter(DetectedBill.user_id == user_id).all()

        by_key: Dict[str, List[DetectedBill]] = defaultdict(list)
        for bill in existing:
            key = normalize_merchant(bill.merchant_pattern) or bill.merchant_pattern
            by_key[key].append(bill)

        for key, bills in by_key.items():
            events = advance_bills(bills, outcome.occurrences.get(key, []), now, config)
            for event in events:
                if event.type == LifecycleEventType.paid:
                    result.paid_bills += 1
                elif event.type == LifecycleEventType.amount_drift:
                    result.amount_changes += 1
                elif event.type == LifecycleEventType.dormant:
                    result.dormant_bills += 1

        known_names = {b.merchant_name.lower() for b in existing}
        known_keys = {key.lower() for key in by_key}
        for candidate in outcome.bills:
            if not candidate.is_active:
                continue
            if candidate.merchant_name.lower() in known_names or candidate.merchant_pattern.lower() in known_keys:
                continue
            db.add(bill_from_candidate(user_id, candidate))
            known_names.add(candidate.merchant_name.lower())
            result.new_bills += 1
            if candidate.split_group_id:
                result.split_bills += 1

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Lifecycle scan failed for user {user_id}: {e}")
        result.status = RunStatus.failed
        result.error = f"Failed to store bill updates: {e}"

    return result


async def scan_all_users(
    session_factory: Callable[[], Session] = SessionLocal,
    now: Optional[date] = None,
    advisor: Optional[ClusterSplitAdvisor] = None,
    config: Optional[DetectionConfig] = None,
    max_concurrency: Optional[int] = None
) -> ScanResult:
    """
    Scan every user with a live account.

    Users are independent, so they run in a bounded pool with one session
    each. An error for one user is recorded and the others carry on.
    """
    now = now or date.today()
    config = config or DetectionConfig.from_settings()
    advisor = advisor or get_split_advisor(config.split_amount_ratio)
    semaphore = asyncio.Semaphore(max_concurrency or settings.scan_max_concurrency)

    db = session_factory()
    try:
        user_ids = list_active_user_ids(db)
    finally:
        db.close()

    async def run(user_id: str) -> ScanUserResult:
        async with semaphore:
            session = session_factory()
            try:
                return await scan(session, user_id, now, advisor, config)
            except Exception as e:
                logger.exception(f"Error processing user {user_id}")
                return ScanUserResult(status=RunStatus.failed, user_id=user_id, error=str(e))
            finally:
                session.close()

    user_results = await asyncio.gather(*(run(user_id) for user_id in user_ids))
    return aggregate_scan_results(user_results)


def aggregate_scan_results(user_results: Sequence[ScanUserResult]) -> ScanResult:
    """Roll per-user counters up into one scan report."""
    result = ScanResult(total_users=len(user_results), users=list(user_results))
    for user_result in user_results:
        if user_result.status == RunStatus.failed:
            result.errors.append(f"User {user_result.user_id}: {user_result.error}")
            continue
        result.processed_users += 1
        result.new_bills_detected += user_result.new_bills
        result.bills_marked_paid += user_result.paid_bills
        result.bills_marked_dormant += user_result.dormant_bills
        result.amount_changes_detected += user_result.amount_changes
        result.split_bills_created += user_result.split_bills
    return result


def get_bills(db: Session, user_id: str, include_dormant: bool = True) -> List[DetectedBill]:
    """A user's stored bills, most confident first."""
    query = db.query(DetectedBill).filter(DetectedBill.user_id == user_id)
    if not include_dormant:
        query = query.filter(DetectedBill.lifecycle_state == LifecycleState.active)
    return query.order_by(DetectedBill.confidence_score.desc(), DetectedBill.merchant_name).all()
