"""Shared test fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from datetime import date
from decimal import Decimal
import uuid

from billwatch.config import DetectionConfig, settings
from billwatch.database import Base, get_db, get_session_factory
from billwatch.main import app
from billwatch.models.account import Account
from billwatch.models.transaction import Transaction
from billwatch.models.detected_bill import DetectedBill, Frequency, LifecycleState, CycleStatus
from billwatch.services.pattern_splitter import AmountRatioSplitAdvisor, FallbackSplitAdvisor
from billwatch.services.transaction_feed import TransactionRecord


USER_ID = "user-1"


@pytest.fixture(autouse=True)
def no_live_ai(monkeypatch):
    """Never reach a real AI provider from tests."""
    monkeypatch.setattr(settings, "ai_split_enabled", False)


@pytest.fixture(scope="function")
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    # Use StaticPool to ensure all connections use the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a session on the per-test database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session, session_factory):
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def config():
    return DetectionConfig.from_settings()


@pytest.fixture
def fallback_advisor():
    """Deterministic advisor: amount rule only."""
    return FallbackSplitAdvisor(None, AmountRatioSplitAdvisor(0.5))


@pytest.fixture
def sample_account(db_session):
    """Create a connected account for the default user."""
    account = Account(id=str(uuid.uuid4()), user_id=USER_ID, name="Test Checking", is_active=True)
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def add_transactions(db_session, sample_account):
    """Factory inserting expense transactions on the sample account."""
    def _add(description, dates, amount, category=None, ai_merchant_name=None, account=None):
        account = account or sample_account
        amounts = amount if isinstance(amount, (list, tuple)) else [amount] * len(dates)
        rows = []
        for txn_date, txn_amount in zip(dates, amounts):
            txn = Transaction(
                id=str(uuid.uuid4()),
                account_id=account.id,
                user_id=account.user_id,
                date=txn_date,
                amount=Decimal(str(txn_amount)),
                raw_description=description,
                ai_merchant_name=ai_merchant_name,
                ai_category_tag=category,
            )
            db_session.add(txn)
            rows.append(txn)
        db_session.commit()
        return rows
    return _add


@pytest.fixture
def make_records():
    """Factory building in-memory transaction records."""
    counter = {"n": 0}

    def _make(description, dates, amount, category=None, merchant_hint=None):
        amounts = amount if isinstance(amount, (list, tuple)) else [amount] * len(dates)
        records = []
        for txn_date, txn_amount in zip(dates, amounts):
            counter["n"] += 1
            records.append(TransactionRecord(
                id=f"txn-{counter['n']:04d}",
                date=txn_date,
                amount=float(txn_amount),
                raw_description=description,
                merchant_hint=merchant_hint,
                category_tag=category,
            ))
        return records
    return _make


def monthly_dates(start: date, count: int, day: int = None):
    """First-of-month style dates: same day in `count` consecutive months."""
    day = day or start.day
    dates = []
    year, month = start.year, start.month
    for _ in range(count):
        dates.append(date(year, month, day))
        month += 1
        if month > 12:
            month = 1
            year += 1
    return dates


@pytest.fixture
def month_dates():
    return monthly_dates


@pytest.fixture
def sample_bill(db_session):
    """Create an active monthly bill for the default user."""
    bill = DetectedBill(
        id=str(uuid.uuid4()),
        user_id=USER_ID,
        merchant_name="Netflix",
        merchant_pattern="Netflix",
        expected_amount=Decimal("15.99"),
        frequency=Frequency.monthly,
        next_predicted_date=date(2026, 3, 1),
        last_transaction_date=date(2026, 2, 1),
        confidence_score=95,
        is_active=True,
        lifecycle_state=LifecycleState.active,
        cycle_status=CycleStatus.upcoming,
        auto_detected=True,
    )
    db_session.add(bill)
    db_session.commit()
    db_session.refresh(bill)
    return bill
