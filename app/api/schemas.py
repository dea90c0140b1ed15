"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class _Camel(BaseModel):
    """Accepts both camelCase (wire) and snake_case (Python) field names."""
    model_config = ConfigDict(populate_by_name=True)


# Status engine
class ReconcileRequest(_Camel):
    # Optional here so a missing value reaches the service and gets a 400, not a 422
    reservation_status: Optional[str] = Field(None, alias="reservationStatus")
    reason: Optional[str] = Field(None, max_length=500)
    override: bool = False


class ReconcileResponse(_Camel):
    message: str
    item_id: int = Field(..., alias="itemId")
    previous_status: str = Field(..., alias="previousStatus")
    new_status: str = Field(..., alias="newStatus")
    changed: bool
    reason: str


class RecommendationResponse(_Camel):
    item_id: int = Field(..., alias="itemId")
    current_status: str = Field(..., alias="currentStatus")
    recommended_status: str = Field(..., alias="recommendedStatus")
    drift_detected: bool = Field(..., alias="driftDetected")
    recommendations: List[Dict[str, Any]] = []
    active_reservations: int = Field(0, alias="activeReservations")
    approved_reservations: int = Field(0, alias="approvedReservations")
    pending_reservations: int = Field(0, alias="pendingReservations")


class StatusUpdateRequest(_Camel):
    status: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)
    force: bool = Field(False, alias="forceUpdate")


# Bulk
class BulkStatusRequest(_Camel):
    item_ids: Optional[List[int]] = Field(None, alias="itemIds")
    status: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class BulkResults(BaseModel):
    updated: List[Dict[str, Any]]
    skipped: List[Dict[str, Any]]
    failed: List[Dict[str, Any]]


class BulkSummary(BaseModel):
    total: int
    updated: int
    skipped: int
    failed: int


class BulkStatusResponse(BaseModel):
    success: bool
    message: str
    results: BulkResults
    summary: BulkSummary


# Reservations and returns
class ReservationTransitionRequest(_Camel):
    status: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)


class ReturnRequest(_Camel):
    condition: str
    notes: Optional[str] = Field(None, max_length=1000)
    return_date: Optional[datetime] = Field(None, alias="returnDate")


# Overdue
class OverdueSummary(_Camel):
    total_overdue_reservations: int = Field(..., alias="totalOverdueReservations")
    notifications_sent: int = Field(..., alias="notificationsSent")
    trust_score_penalties_applied: int = Field(..., alias="trustScorePenaltiesApplied")
    by_severity: Dict[str, int] = Field(..., alias="bySeverity")


class SweepResponse(_Camel):
    success: bool
    message: str
    summary: OverdueSummary
    notifications: List[Dict[str, Any]]
    trust_score_updates: List[Dict[str, Any]] = Field(..., alias="trustScoreUpdates")
    processed_at: str = Field(..., alias="processedAt")


class NotifyRequest(_Camel):
    reservation_ids: List[int] = Field(default_factory=list, alias="reservationIds")
    notification_type: str = Field(..., alias="notificationType")
    custom_message: Optional[str] = Field(None, alias="customMessage", max_length=1000)
