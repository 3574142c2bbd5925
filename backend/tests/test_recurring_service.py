"""Tests for recurring bill detection, regeneration and scanning."""

import asyncio
import uuid
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from billwatch.models.account import Account
from billwatch.models.detected_bill import CycleStatus, DetectedBill, Frequency, LifecycleState
from billwatch.schemas.detected_bill import RunStatus, ScanUserResult
from billwatch.schemas.split import ClusterLabel, SplitVerdict
from billwatch.services import recurring_service
from billwatch.services.pattern_splitter import ClusterSplitAdvisor, split_group_id
from billwatch.services.recurring_service import (
    UNRESOLVABLE_MERCHANT,
    aggregate_scan_results,
    detect_bills,
    get_bills,
    group_by_merchant,
    regenerate,
    scan,
    scan_all_users,
)


def verizon_records(make_records, month_dates):
    return (
        make_records("VERIZON WIRELESS", month_dates(date(2026, 1, 5), 12), 20.00)
        + make_records("VERIZON WIRELESS", month_dates(date(2026, 1, 10), 10)[::3], 800.00)
    )


class BrokenAdvisor(ClusterSplitAdvisor):
    async def advise(self, merchant, clusters):
        raise RuntimeError("advisor exploded")


class BlankLabelAdvisor(ClusterSplitAdvisor):
    async def advise(self, merchant, clusters):
        return SplitVerdict(
            should_split=True,
            patterns=[ClusterLabel(description="   ", amount=c.amount, frequency=c.frequency) for c in clusters],
        )


class TestGroupByMerchant:
    def test_groups_by_normalized_key(self, make_records):
        records = make_records("NETFLIX.COM #1", [date(2026, 1, 1)], 15.99)
        records += make_records("Netflix.com #22 CA", [date(2026, 2, 1)], 15.99)

        groups, rejected = group_by_merchant(records)

        assert list(groups) == ["Netflix.com"]
        assert len(groups["Netflix.com"]) == 2
        assert rejected == []

    def test_unresolvable_merchant_rejected(self, make_records):
        records = make_records("#9921", [date(2026, 1, 1), date(2026, 2, 1)], 12.00)
        records += make_records("", [date(2026, 1, 3)], 4.00)

        groups, rejected = group_by_merchant(records)

        assert groups == {}
        assert [(r.merchant, r.reason, r.occurrence_count) for r in rejected] == [
            ("(blank)", UNRESOLVABLE_MERCHANT, 1),
            ("#9921", UNRESOLVABLE_MERCHANT, 2),
        ]

    def test_income_skipped(self, make_records):
        groups, _ = group_by_merchant(make_records("PAYROLL", [date(2026, 1, 1)], -2500.00))
        assert groups == {}


class TestDetectBills:
    """Test the end-to-end detection pipeline."""

    def test_clean_monthly_subscription(self, make_records, month_dates, fallback_advisor, config):
        records = make_records("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)

        outcome = asyncio.run(detect_bills(records, date(2026, 6, 15), "user-1", fallback_advisor, config))

        assert len(outcome.bills) == 1
        bill = outcome.bills[0]
        assert bill.merchant_name == "Netflix"
        assert bill.frequency == Frequency.monthly
        assert bill.expected_amount == Decimal("15.99")
        assert bill.confidence_score >= 95
        assert bill.is_active is True
        assert bill.next_predicted_date == date(2026, 7, 1)
        assert bill.split_group_id is None

    def test_two_occurrences_rejected(self, make_records, fallback_advisor, config):
        records = make_records("LA FITNESS", [date(2026, 1, 1), date(2026, 2, 10)], [60.00, 62.00])

        outcome = asyncio.run(detect_bills(records, date(2026, 3, 1), "user-1", fallback_advisor, config))

        assert outcome.bills == []
        assert len(outcome.rejected) == 1
        assert "Insufficient occurrences" in outcome.rejected[0].reason

    def test_dual_account_postings_deduplicated(self, make_records, month_dates, fallback_advisor, config):
        records = make_records("COMCAST", month_dates(date(2026, 1, 1), 6), 89.00)
        records += make_records("COMCAST", month_dates(date(2026, 1, 3), 6), 89.50)

        outcome = asyncio.run(detect_bills(records, date(2026, 6, 15), "user-1", fallback_advisor, config))

        assert len(outcome.bills) == 1
        bill = outcome.bills[0]
        assert bill.expected_amount == Decimal("89.00")
        assert bill.occurrence_count == 6
        assert bill.frequency == Frequency.monthly
        assert all(o.amount == 89.00 for o in outcome.occurrences["Comcast"])

    def test_multi_obligation_merchant_split(self, make_records, month_dates, fallback_advisor, config):
        records = verizon_records(make_records, month_dates)

        outcome = asyncio.run(detect_bills(records, date(2026, 12, 20), "user-1", fallback_advisor, config))

        by_name = {b.merchant_name: b for b in outcome.bills}
        assert set(by_name) == {
            "Verizon Wireless - Monthly $20.00",
            "Verizon Wireless - Quarterly $800.00",
        }
        plan = by_name["Verizon Wireless - Monthly $20.00"]
        device = by_name["Verizon Wireless - Quarterly $800.00"]
        assert plan.frequency == Frequency.monthly
        assert device.frequency == Frequency.quarterly
        assert plan.is_active and device.is_active
        assert plan.split_group_id == device.split_group_id == split_group_id("user-1", "Verizon Wireless")
        assert plan.merchant_pattern == device.merchant_pattern == "Verizon Wireless"

    def test_blank_split_labels_use_cluster_description(self, make_records, month_dates, config):
        records = verizon_records(make_records, month_dates)

        outcome = asyncio.run(detect_bills(records, date(2026, 12, 20), "user-1", BlankLabelAdvisor(), config))

        assert sorted(b.merchant_name for b in outcome.bills) == [
            "Verizon Wireless - Monthly $20.00",
            "Verizon Wireless - Quarterly $800.00",
        ]

    def test_price_change_not_split(self, make_records, month_dates, fallback_advisor, config):
        """Clusters that follow each other in time are one bill with a new price."""
        records = make_records("GYM CO", month_dates(date(2025, 7, 1), 6), 20.00)
        records += make_records("GYM CO", month_dates(date(2026, 1, 1), 6), 45.00)

        outcome = asyncio.run(detect_bills(records, date(2026, 6, 15), "user-1", fallback_advisor, config))

        assert all(b.split_group_id is None for b in outcome.bills)
        assert len(outcome.bills) + len(outcome.rejected) == 1

    def test_split_leftover_cluster_rejected(self, make_records, month_dates, fallback_advisor, config):
        records = verizon_records(make_records, month_dates)
        records += make_records("VERIZON WIRELESS", [date(2026, 6, 20)], 300.00)

        outcome = asyncio.run(detect_bills(records, date(2026, 12, 20), "user-1", fallback_advisor, config))

        assert len(outcome.bills) == 2
        assert [r.reason for r in outcome.rejected] == ["Amount cluster ~$300.00 is not recurring"]

    def test_idempotent(self, make_records, month_dates, fallback_advisor, config):
        records = verizon_records(make_records, month_dates)
        records += make_records("NETFLIX", month_dates(date(2026, 1, 1), 12), 15.99)
        records += make_records("RANDOM SHOP", [date(2026, 3, 3), date(2026, 3, 9)], [12.00, 80.00])

        first = asyncio.run(detect_bills(records, date(2026, 12, 20), "user-1", fallback_advisor, config))
        second = asyncio.run(detect_bills(
            list(reversed(records)), date(2026, 12, 20), "user-1", fallback_advisor, config
        ))

        assert first.bills == second.bills
        assert first.rejected == second.rejected

    def test_never_emits_bill_below_three_occurrences(self, make_records, fallback_advisor, config):
        records = make_records("A", [date(2026, 1, 1), date(2026, 2, 1)], 10.00)
        records += make_records("B", [date(2026, 1, 1)], 99.00)

        outcome = asyncio.run(detect_bills(records, date(2026, 3, 1), "user-1", fallback_advisor, config))

        assert outcome.bills == []
        assert {r.merchant for r in outcome.rejected} == {"A", "B"}

    def test_merchant_failure_isolated(self, make_records, month_dates, config):
        records = verizon_records(make_records, month_dates)
        records += make_records("NETFLIX", month_dates(date(2026, 1, 1), 12), 15.99)

        outcome = asyncio.run(detect_bills(records, date(2026, 12, 20), "user-1", BrokenAdvisor(), config))

        assert [b.merchant_name for b in outcome.bills] == ["Netflix"]
        errors = [r for r in outcome.rejected if r.merchant == "Verizon Wireless"]
        assert len(errors) == 1
        assert errors[0].reason == "Detection error: advisor exploded"

    def test_sorted_by_confidence(self, make_records, month_dates, fallback_advisor, config):
        records = make_records("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)
        records += make_records("POWER CO", month_dates(date(2026, 1, 1), 6), [80, 95, 110, 70, 90, 100])

        outcome = asyncio.run(detect_bills(records, date(2026, 6, 15), "user-1", fallback_advisor, config))

        scores = [b.confidence_score for b in outcome.bills]
        assert scores == sorted(scores, reverse=True)
        assert outcome.bills[0].merchant_name == "Netflix"


class TestRegenerate:
    """Test full regeneration against the database."""

    def test_dry_run_writes_nothing(self, db_session, add_transactions, month_dates, fallback_advisor):
        add_transactions("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)

        result = asyncio.run(regenerate(
            db_session, "user-1", dry_run=True, now=date(2026, 6, 15), advisor=fallback_advisor
        ))

        assert result.status == RunStatus.ok
        assert result.dry_run is True
        assert result.detected == 1
        assert result.summary.total_transactions == 6
        assert result.summary.total_merchants == 1
        assert result.summary.old_records_cleared is False
        assert db_session.query(DetectedBill).count() == 0

    def test_persists_bills(self, db_session, add_transactions, month_dates, fallback_advisor):
        add_transactions("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)

        result = asyncio.run(regenerate(
            db_session, "user-1", dry_run=False, now=date(2026, 6, 15), advisor=fallback_advisor
        ))

        assert result.status == RunStatus.ok
        assert result.summary.old_records_cleared is True
        assert result.summary.active_bills == 1
        assert result.summary.monthly_total == Decimal("15.99")

        stored = get_bills(db_session, "user-1")
        assert len(stored) == 1
        assert stored[0].merchant_name == "Netflix"
        assert stored[0].cycle_status == CycleStatus.upcoming
        assert stored[0].auto_detected is True

    def test_replaces_existing_bills(self, db_session, sample_bill, add_transactions, month_dates, fallback_advisor):
        add_transactions("SPOTIFY", month_dates(date(2026, 1, 1), 6), 10.99)

        asyncio.run(regenerate(db_session, "user-1", dry_run=False, now=date(2026, 6, 15), advisor=fallback_advisor))

        names = [b.merchant_name for b in get_bills(db_session, "user-1")]
        assert names == ["Spotify"]

    def test_repeat_runs_give_same_bills(self, db_session, add_transactions, month_dates, fallback_advisor):
        add_transactions("VERIZON WIRELESS", month_dates(date(2026, 1, 5), 12), 20.00)
        add_transactions("VERIZON WIRELESS", month_dates(date(2026, 1, 10), 10)[::3], 800.00)

        def snapshot():
            asyncio.run(regenerate(
                db_session, "user-1", dry_run=False, now=date(2026, 12, 20), advisor=fallback_advisor
            ))
            return sorted(
                (b.merchant_name, b.expected_amount, b.frequency, b.next_predicted_date, b.split_group_id)
                for b in get_bills(db_session, "user-1")
            )

        assert snapshot() == snapshot()

    def test_no_accounts(self, db_session, fallback_advisor):
        result = asyncio.run(regenerate(db_session, "nobody", dry_run=False, advisor=fallback_advisor))

        assert result.status == RunStatus.no_data
        assert result.error == "No connected accounts found"

    def test_no_transactions(self, db_session, sample_account, fallback_advisor):
        result = asyncio.run(regenerate(db_session, "user-1", dry_run=False, advisor=fallback_advisor))

        assert result.status == RunStatus.no_data
        assert result.error == "No transactions found"

    def test_storage_failure_keeps_previous_bills(
        self, db_session, sample_bill, add_transactions, month_dates, fallback_advisor, monkeypatch
    ):
        add_transactions("SPOTIFY", month_dates(date(2026, 1, 1), 6), 10.99)

        def failing_commit():
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        result = asyncio.run(regenerate(
            db_session, "user-1", dry_run=False, now=date(2026, 6, 15), advisor=fallback_advisor
        ))

        assert result.status == RunStatus.failed
        assert "disk full" in result.error
        assert [b.merchant_name for b in get_bills(db_session, "user-1")] == ["Netflix"]


class TestScan:
    """Test incremental lifecycle scanning."""

    def test_adds_new_bills(self, db_session, add_transactions, month_dates, fallback_advisor):
        add_transactions("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)

        result = asyncio.run(scan(db_session, "user-1", now=date(2026, 6, 15), advisor=fallback_advisor))

        assert result.status == RunStatus.ok
        assert result.new_bills == 1
        assert [b.merchant_name for b in get_bills(db_session, "user-1")] == ["Netflix"]

    def test_marks_paid(self, db_session, sample_bill, add_transactions, fallback_advisor):
        add_transactions(
            "NETFLIX",
            [date(2025, 12, 1), date(2026, 1, 1), date(2026, 2, 1), date(2026, 3, 2)],
            15.99,
        )

        result = asyncio.run(scan(db_session, "user-1", now=date(2026, 3, 5), advisor=fallback_advisor))

        assert result.paid_bills == 1
        assert result.new_bills == 0
        db_session.refresh(sample_bill)
        assert sample_bill.cycle_status == CycleStatus.paid
        assert sample_bill.last_paid_date == date(2026, 3, 2)
        assert sample_bill.next_predicted_date == date(2026, 4, 1)
        assert db_session.query(DetectedBill).count() == 1

    def test_detects_amount_change(self, db_session, sample_bill, add_transactions, fallback_advisor):
        add_transactions(
            "NETFLIX",
            [date(2025, 12, 1), date(2026, 1, 1), date(2026, 2, 1), date(2026, 3, 1)],
            [15.99, 15.99, 15.99, 17.99],
        )

        result = asyncio.run(scan(db_session, "user-1", now=date(2026, 3, 5), advisor=fallback_advisor))

        assert result.amount_changes == 1
        db_session.refresh(sample_bill)
        assert sample_bill.expected_amount == Decimal("17.99")
        assert sample_bill.amount_drift == Decimal("2.00")

    def test_marks_dormant(self, db_session, sample_bill, add_transactions, fallback_advisor):
        add_transactions("NETFLIX", [date(2025, 11, 1), date(2025, 12, 1), date(2026, 1, 1), date(2026, 2, 1)], 15.99)
        now = date(2026, 2, 1) + timedelta(days=95)

        result = asyncio.run(scan(db_session, "user-1", now=now, advisor=fallback_advisor))

        assert result.dormant_bills == 1
        assert result.new_bills == 0
        db_session.refresh(sample_bill)
        assert sample_bill.lifecycle_state == LifecycleState.dormant
        assert sample_bill.is_active is False
        assert get_bills(db_session, "user-1", include_dormant=False) == []

    def test_second_scan_is_a_no_op(self, db_session, sample_bill, add_transactions, fallback_advisor):
        add_transactions("NETFLIX", [date(2026, 1, 1), date(2026, 2, 1), date(2026, 3, 2)], 15.99)

        asyncio.run(scan(db_session, "user-1", now=date(2026, 3, 5), advisor=fallback_advisor))
        second = asyncio.run(scan(db_session, "user-1", now=date(2026, 3, 5), advisor=fallback_advisor))

        assert (second.new_bills, second.paid_bills, second.dormant_bills, second.amount_changes) == (0, 0, 0, 0)

    def test_counts_split_bills(self, db_session, add_transactions, month_dates, fallback_advisor):
        add_transactions("VERIZON WIRELESS", month_dates(date(2026, 1, 5), 12), 20.00)
        add_transactions("VERIZON WIRELESS", month_dates(date(2026, 1, 10), 10)[::3], 800.00)

        result = asyncio.run(scan(db_session, "user-1", now=date(2026, 12, 20), advisor=fallback_advisor))

        assert result.new_bills == 2
        assert result.split_bills == 2

    def test_no_data(self, db_session, fallback_advisor):
        result = asyncio.run(scan(db_session, "ghost", advisor=fallback_advisor))
        assert result.status == RunStatus.no_data


class TestScanAllUsers:
    """Test the multi-user scan."""

    def _add_user(self, db_session, user_id):
        account = Account(id=str(uuid.uuid4()), user_id=user_id, name="Checking", is_active=True)
        db_session.add(account)
        db_session.commit()
        return account

    def test_scans_every_user(self, db_session, session_factory, add_transactions, month_dates, fallback_advisor):
        add_transactions("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)
        other = self._add_user(db_session, "user-2")
        add_transactions("HULU", month_dates(date(2026, 1, 3), 6), 7.99, account=other)
        self._add_user(db_session, "user-3")

        result = asyncio.run(scan_all_users(
            session_factory, now=date(2026, 6, 15), advisor=fallback_advisor, max_concurrency=1
        ))

        assert result.total_users == 3
        assert result.processed_users == 3
        assert result.new_bills_detected == 2
        assert result.errors == []
        assert [u.user_id for u in result.users] == ["user-1", "user-2", "user-3"]
        assert result.users[2].status == RunStatus.no_data

    def test_user_error_isolated(
        self, db_session, session_factory, add_transactions, month_dates, fallback_advisor, monkeypatch
    ):
        add_transactions("NETFLIX", month_dates(date(2026, 1, 1), 6), 15.99)
        self._add_user(db_session, "user-2")
        real_scan = recurring_service.scan

        async def flaky_scan(db, user_id, *args, **kwargs):
            if user_id == "user-2":
                raise RuntimeError("bank sync corrupted")
            return await real_scan(db, user_id, *args, **kwargs)

        monkeypatch.setattr(recurring_service, "scan", flaky_scan)
        result = asyncio.run(scan_all_users(
            session_factory, now=date(2026, 6, 15), advisor=fallback_advisor, max_concurrency=1
        ))

        assert result.total_users == 2
        assert result.processed_users == 1
        assert result.new_bills_detected == 1
        assert result.errors == ["User user-2: bank sync corrupted"]


class TestAggregateScanResults:
    def test_rolls_up_counters(self):
        result = aggregate_scan_results([
            ScanUserResult(status=RunStatus.ok, user_id="a", new_bills=2, paid_bills=1, split_bills=2),
            ScanUserResult(status=RunStatus.ok, user_id="b", dormant_bills=1, amount_changes=3),
            ScanUserResult(status=RunStatus.failed, user_id="c", error="boom", new_bills=9),
        ])

        assert result.total_users == 3
        assert result.processed_users == 2
        assert result.new_bills_detected == 2
        assert result.bills_marked_paid == 1
        assert result.bills_marked_dormant == 1
        assert result.amount_changes_detected == 3
        assert result.split_bills_created == 2
        assert result.errors == ["User c: boom"]
