"""Reservation lifecycle transitions and return recording."""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.database import transaction
from app.models.audit import AuditAction
from app.models.domain import Reservation, Return
from app.models.enums import ReservationStatus, ItemCondition
from app.services.audit import record_audit
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.status_engine import StatusEngine, parse_reservation_status

logger = logging.getLogger(__name__)

ALLOWED_RESERVATION_TRANSITIONS = {
    ReservationStatus.PENDING: (
        ReservationStatus.APPROVED,
        ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED,
    ),
    ReservationStatus.APPROVED: (
        ReservationStatus.ACTIVE,
        ReservationStatus.CANCELLED,
    ),
    ReservationStatus.ACTIVE: (
        ReservationStatus.COMPLETED,
    ),
}


def _as_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; convert offset-aware input to match."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ReservationService:
    """Drives reservations through their lifecycle and keeps the item in step."""

    def __init__(self, db: Session):
        self.db = db
        self.engine = StatusEngine(db)

    def get_reservation(self, reservation_id: int) -> Reservation:
        reservation = self.db.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    def transition_reservation(
        self,
        reservation_id: int,
        new_status,
        acting_user_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> dict:
        """
        Move a reservation to its next lifecycle status.

        Invariants:
        - Terminal reservations never change
        - The reservation update, its audit row and the item's reconciled
          status commit together
        """
        target = parse_reservation_status(new_status)
        reservation = self.get_reservation(reservation_id)
        current = reservation.status

        if current.is_terminal:
            raise ConflictError(
                f"Reservation is {current.value} and can no longer change",
                conflicting_reservations=[reservation.id]
            )
        if target not in ALLOWED_RESERVATION_TRANSITIONS.get(current, ()):
            allowed = ALLOWED_RESERVATION_TRANSITIONS.get(current, ())
            raise ConflictError(
                f"Cannot transition reservation from {current.value} to {target.value}",
                suggestion=f"Valid transitions from {current.value}: "
                           f"{', '.join(s.value for s in allowed)}",
                conflicting_reservations=[reservation.id]
            )
        if target == ReservationStatus.REJECTED and not reason:
            raise ValidationError("A rejection reason is required")

        now = now or datetime.utcnow()
        try:
            with transaction(self.db):
                self._apply(reservation, target, acting_user_id, reason, now)
                record_audit(
                    self.db,
                    AuditAction.RESERVATION_STATUS_CHANGED,
                    "Reservation",
                    reservation.id,
                    acting_user_id,
                    changes={
                        "field": "status",
                        "from": current.value,
                        "to": target.value,
                        "reason": reason,
                        "timestamp": now.isoformat(),
                    },
                    created_at=now
                )
                item_result = self.engine.apply_reconciliation(
                    reservation.item, target, acting_user_id, now=now
                )
        except StaleDataError as exc:
            raise ConflictError("Item was modified concurrently; retry the transition") from exc

        logger.info(
            "Reservation %s moved %s -> %s by user %s",
            reservation.id, current.value, target.value, acting_user_id
        )
        return {
            "reservationId": reservation.id,
            "previousStatus": current.value,
            "newStatus": target.value,
            "item": item_result,
        }

    def _apply(self, reservation, target, acting_user_id, reason, now):
        reservation.status = target
        reservation.updated_at = now
        if target == ReservationStatus.APPROVED:
            reservation.approved_by_id = acting_user_id
            reservation.approved_at = now
        elif target == ReservationStatus.ACTIVE:
            reservation.pickup_confirmed = True
            reservation.pickup_confirmed_at = now
            reservation.actual_start_date = now
        elif target == ReservationStatus.COMPLETED:
            reservation.actual_end_date = now
        elif target in (ReservationStatus.REJECTED, ReservationStatus.CANCELLED):
            reservation.rejection_reason = reason

    def record_return(
        self,
        reservation_id: int,
        acting_user_id: int,
        condition,
        notes: Optional[str] = None,
        return_date: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> dict:
        """Record the physical hand-back of an ACTIVE reservation's item."""
        try:
            condition = ItemCondition(condition)
        except ValueError:
            raise ValidationError(
                f"Invalid condition: {condition}",
                valid_values=[c.value for c in ItemCondition]
            )
        reservation = self.get_reservation(reservation_id)
        if reservation.status != ReservationStatus.ACTIVE:
            raise ConflictError(
                f"Only active reservations can be returned (current: {reservation.status.value})",
                conflicting_reservations=[reservation.id]
            )

        now = now or datetime.utcnow()
        returned_at = _as_naive_utc(return_date) if return_date else now
        try:
            with transaction(self.db):
                item_return = Return(
                    reservation_id=reservation.id,
                    item_id=reservation.item_id,
                    user_id=reservation.user_id,
                    return_date=returned_at,
                    condition_on_return=condition,
                    notes=notes,
                    created_at=now
                )
                self.db.add(item_return)
                reservation.item.condition = condition
                self._apply(reservation, ReservationStatus.COMPLETED, acting_user_id, None, now)
                reservation.actual_end_date = returned_at
                self.db.flush()
                record_audit(
                    self.db,
                    AuditAction.RECORD_RETURN,
                    "Reservation",
                    reservation.id,
                    acting_user_id,
                    changes={
                        "returnId": item_return.id,
                        "conditionOnReturn": condition.value,
                        "returnDate": returned_at.isoformat(),
                        "late": returned_at > reservation.end_date,
                    },
                    created_at=now
                )
                item_result = self.engine.apply_reconciliation(
                    reservation.item, ReservationStatus.COMPLETED, acting_user_id, now=now
                )
        except StaleDataError as exc:
            raise ConflictError("Item was modified concurrently; retry the return") from exc

        logger.info("Return %s recorded for reservation %s", item_return.id, reservation.id)
        return {
            "returnId": item_return.id,
            "reservationId": reservation.id,
            "item": item_result,
        }
