"""API endpoints for detected bills."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, sessionmaker
from typing import List

from billwatch.database import get_db, get_session_factory
from billwatch.models.detected_bill import DetectedBill
from billwatch.schemas.detected_bill import (
    DetectedBillResponse,
    RegenerateResult,
    ScanRequest,
    ScanResult,
)
from billwatch.services import recurring_service

router = APIRouter(prefix="/bills", tags=["bills"])


@router.get("", response_model=List[DetectedBillResponse])
def list_bills(
    user_id: str = Query(...),
    include_dormant: bool = Query(True),
    db: Session = Depends(get_db)
):
    """Get a user's stored bills."""
    return recurring_service.get_bills(db, user_id, include_dormant)


@router.post("/regenerate", response_model=RegenerateResult)
async def regenerate_bills(
    user_id: str = Query(...),
    dry_run: bool = Query(True, description="Return the computed bills without writing them"),
    db: Session = Depends(get_db)
):
    """
    Recompute a user's bill set from their full transaction history.
    Dry run by default, pass dry_run=false to replace stored bills.
    """
    return await recurring_service.regenerate(db, user_id, dry_run=dry_run)


@router.post("/scan", response_model=ScanResult)
async def scan_bills(
    request: ScanRequest,
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory)
):
    """Incremental lifecycle pass for one user or for every user."""
    if request.scan_all_users:
        return await recurring_service.scan_all_users(session_factory)
    if not request.user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    user_result = await recurring_service.scan(db, request.user_id)
    return recurring_service.aggregate_scan_results([user_result])


@router.get("/{bill_id}", response_model=DetectedBillResponse)
def get_bill(
    bill_id: str,
    db: Session = Depends(get_db)
):
    """Get a single bill."""
    bill = db.query(DetectedBill).filter(DetectedBill.id == bill_id).first()
    if not bill:
        raise HTTPException(status_code=404, detail="Bill not found")
    return bill
