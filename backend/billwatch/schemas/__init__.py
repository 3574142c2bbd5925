"""
Pydantic schemas package.
"""

from billwatch.schemas.detected_bill import (
    RunStatus,
    BillCandidate,
    RejectionRecord,
    DetectedBillResponse,
    RegenerateSummary,
    RegenerateResult,
    ScanUserResult,
    ScanResult,
    ScanRequest,
)
from billwatch.schemas.split import (
    ClusterSummary,
    ClusterLabel,
    SplitVerdict,
)

__all__ = [
    "RunStatus",
    "BillCandidate",
    "RejectionRecord",
    "DetectedBillResponse",
    "RegenerateSummary",
    "RegenerateResult",
    "ScanUserResult",
    "ScanResult",
    "ScanRequest",
    "ClusterSummary",
    "ClusterLabel",
    "SplitVerdict",
]
