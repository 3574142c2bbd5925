"""
Detected bill database model.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Boolean, DateTime, Date, Integer, Numeric, Enum, UniqueConstraint
)
import enum
from billwatch.database import Base


class Frequency(str, enum.Enum):
    """Recurring frequency enumeration."""
    weekly = "weekly"
    biweekly = "bi-weekly"
    monthly = "monthly"
    bimonthly = "bi-monthly"
    quarterly = "quarterly"

    @property
    def days(self) -> int:
        """Canonical number of days between two charges."""
        return FREQUENCY_DAYS[self]

    @property
    def label(self) -> str:
        return self.value.replace("-", " ").title().replace(" ", "-")


FREQUENCY_DAYS = {
    Frequency.weekly: 7,
    Frequency.biweekly: 14,
    Frequency.monthly: 30,
    Frequency.bimonthly: 60,
    Frequency.quarterly: 90,
}


class LifecycleState(str, enum.Enum):
    """Whether a bill is still recurring."""
    active = "active"
    dormant = "dormant"


class CycleStatus(str, enum.Enum):
    """Payment status of the current billing cycle."""
    upcoming = "upcoming"
    paid = "paid"


class DetectedBill(Base):
    """A recurring merchant-spending pattern tracked for one user."""

    __tablename__ = "detected_bills"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    merchant_name = Column(String(255), nullable=False)
    merchant_pattern = Column(String(255), nullable=False)  # Normalized merchant key
    expected_amount = Column(Numeric(12, 2), nullable=False)
    frequency = Column(Enum(Frequency, values_callable=lambda e: [m.value for m in e]), nullable=False)
    next_predicted_date = Column(Date, nullable=True)
    last_transaction_date = Column(Date, nullable=True)
    last_paid_date = Column(Date, nullable=True)
    confidence_score = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    lifecycle_state = Column(Enum(LifecycleState), default=LifecycleState.active, nullable=False)
    cycle_status = Column(Enum(CycleStatus), default=CycleStatus.upcoming, nullable=False)
    amount_drift = Column(Numeric(12, 2), nullable=True)
    auto_detected = Column(Boolean, default=True, nullable=False)
    split_group_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "merchant_name", name="uq_detected_bill_user_merchant"),
    )
