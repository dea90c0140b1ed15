"""API routes for item status, reservations, overdue tracking and reports."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, require_staff
from app.api.schemas import (
    BulkStatusRequest,
    BulkStatusResponse,
    NotifyRequest,
    RecommendationResponse,
    ReconcileRequest,
    ReconcileResponse,
    ReservationTransitionRequest,
    ReturnRequest,
    StatusUpdateRequest,
    SweepResponse,
)
from app.database import get_db
from app.models.domain import User
from app.services import reporting
from app.services.bulk_status import BulkStatusUpdater
from app.services.errors import BrocyError
from app.services.overdue import OverdueSweep
from app.services.reservations import ReservationService
from app.services.status_engine import StatusEngine

router = APIRouter()


def _http_error(e: BrocyError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


# Item status endpoints
@router.get("/items/{item_id}/status/auto", response_model=RecommendationResponse, responses={
    404: {"description": "Item not found"}
})
def get_status_recommendations(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Stored vs. derived status for an item. Never writes."""
    recommendations = StatusEngine(db).get_status_transition_recommendations(item_id)
    if recommendations["currentStatus"] is None:
        raise HTTPException(status_code=404, detail={"error": "Item not found"})
    return recommendations


@router.post("/items/{item_id}/status/auto", response_model=ReconcileResponse)
def trigger_reconciliation(
    item_id: int,
    body: ReconcileRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    """
    Recompute the item's status after a reservation change.

    REFUSES (409) when the item holds more than one active reservation.
    """
    try:
        result = StatusEngine(db).reconcile_item(
            item_id,
            body.reservation_status,
            current_user.id,
            reason=body.reason,
            override=body.override
        )
    except BrocyError as e:
        raise _http_error(e)
    return {"message": "Item status updated automatically", **result}


@router.patch("/items/{item_id}/status")
def update_item_status(
    item_id: int,
    body: StatusUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    """Direct staff edit of an item's status. Conflicts are hard failures."""
    try:
        return StatusEngine(db).set_item_status(
            item_id, body.status, current_user.id, reason=body.reason, force=body.force
        )
    except BrocyError as e:
        raise _http_error(e)


@router.get("/items/{item_id}/status")
def get_item_status_history(
    item_id: int,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return StatusEngine(db).get_status_history(item_id, limit=limit)
    except BrocyError as e:
        raise _http_error(e)


@router.delete("/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_item(
    item_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    """Delete an item. REFUSES while any reservation still holds it."""
    try:
        StatusEngine(db).delete_item(item_id, current_user.id)
    except BrocyError as e:
        raise _http_error(e)


@router.post("/items/status/bulk", response_model=BulkStatusResponse)
def bulk_update_status(
    body: BulkStatusRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    """
    Move up to the configured maximum of items to one status.

    Per-item conflicts come back in `results.failed`; the request only
    fails as a whole for invalid input or unknown item ids.
    """
    try:
        return BulkStatusUpdater(db).update(
            body.item_ids, body.status, current_user.id, reason=body.reason
        )
    except BrocyError as e:
        raise _http_error(e)


@router.get("/items/status/overview")
def get_status_overview(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return reporting.status_overview(db)


# Reservation endpoints
@router.post("/reservations/{reservation_id}/transition")
def transition_reservation(
    reservation_id: int,
    body: ReservationTransitionRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    """Approve, reject, activate, complete or cancel a reservation."""
    try:
        return ReservationService(db).transition_reservation(
            reservation_id, body.status, current_user.id, reason=body.reason
        )
    except BrocyError as e:
        raise _http_error(e)


@router.post("/reservations/{reservation_id}/return", status_code=status.HTTP_201_CREATED)
def record_return(
    reservation_id: int,
    body: ReturnRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    try:
        return ReservationService(db).record_return(
            reservation_id,
            current_user.id,
            body.condition,
            notes=body.notes,
            return_date=body.return_date
        )
    except BrocyError as e:
        raise _http_error(e)


# Overdue endpoints
@router.get("/returns/overdue")
def list_overdue(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    severity: str = Query("ALL"),
    user_id: Optional[int] = Query(None, alias="userId"),
    item_id: Optional[int] = Query(None, alias="itemId"),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    try:
        return OverdueSweep(db).list_overdue(
            severity=severity, user_id=user_id, item_id=item_id, page=page, limit=limit
        )
    except BrocyError as e:
        raise _http_error(e)


@router.post("/returns/overdue/notify")
def send_overdue_notifications(
    body: NotifyRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    try:
        return OverdueSweep(db).send_notifications(
            body.reservation_ids,
            body.notification_type,
            current_user.id,
            custom_message=body.custom_message
        )
    except BrocyError as e:
        raise _http_error(e)


@router.post("/returns/tracking/automated", response_model=SweepResponse)
def run_overdue_sweep(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_staff)
):
    """Run the overdue sweep now. Safe to repeat within the idempotency window."""
    return OverdueSweep(db).run(acting_user_id=current_user.id)


# Reports
@router.get("/reports/summary")
def get_report_summary(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return reporting.summary(db)
