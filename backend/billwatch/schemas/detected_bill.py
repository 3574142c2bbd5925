"""Pydantic schemas for detected bills and engine runs."""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from decimal import Decimal
import enum

from billwatch.models.detected_bill import Frequency, LifecycleState, CycleStatus


class RunStatus(str, enum.Enum):
    """Outcome of a regenerate or scan run."""
    ok = "ok"
    no_data = "no_data"
    failed = "failed"


class BillCandidate(BaseModel):
    """A bill computed by the detection pipeline, before persistence."""
    merchant_name: str
    merchant_pattern: str
    expected_amount: Decimal
    frequency: Frequency
    next_predicted_date: date
    last_transaction_date: date
    confidence_score: int = Field(ge=0, le=99)
    is_active: bool
    lifecycle_state: LifecycleState
    auto_detected: bool = True
    split_group_id: Optional[str] = None
    occurrence_count: int = 0


class RejectionRecord(BaseModel):
    """Why a merchant was considered but not promoted to a bill."""
    merchant: str
    reason: str
    occurrence_count: int = 0


class DetectedBillResponse(BaseModel):
    id: str
    user_id: str
    merchant_name: str
    merchant_pattern: str
    expected_amount: Decimal
    frequency: Frequency
    next_predicted_date: Optional[date] = None
    last_transaction_date: Optional[date] = None
    last_paid_date: Optional[date] = None
    confidence_score: int
    is_active: bool
    lifecycle_state: LifecycleState
    cycle_status: CycleStatus
    amount_drift: Optional[Decimal] = None
    auto_detected: bool
    split_group_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class RegenerateSummary(BaseModel):
    total_transactions: int = 0
    total_merchants: int = 0
    active_bills: int = 0
    dormant_bills: int = 0
    monthly_total: Decimal = Decimal("0.00")
    old_records_cleared: bool = False


class RegenerateResult(BaseModel):
    """Result of a full regeneration for one user."""
    status: RunStatus
    user_id: str
    dry_run: bool
    detected: int = 0
    bills: List[BillCandidate] = []
    rejected: List[RejectionRecord] = []
    summary: RegenerateSummary = Field(default_factory=RegenerateSummary)
    error: Optional[str] = None


class ScanUserResult(BaseModel):
    """Counters for one user's incremental lifecycle pass."""
    status: RunStatus
    user_id: str
    new_bills: int = 0
    paid_bills: int = 0
    dormant_bills: int = 0
    amount_changes: int = 0
    split_bills: int = 0
    error: Optional[str] = None


class ScanResult(BaseModel):
    """Aggregate of a scan over one or many users."""
    total_users: int = 0
    processed_users: int = 0
    new_bills_detected: int = 0
    bills_marked_paid: int = 0
    bills_marked_dormant: int = 0
    amount_changes_detected: int = 0
    split_bills_created: int = 0
    users: List[ScanUserResult] = []
    errors: List[str] = []


class ScanRequest(BaseModel):
    """Request body for the scan endpoint."""
    user_id: Optional[str] = None
    scan_all_users: bool = False
