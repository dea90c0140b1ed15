"""
Status reconciliation engine.

An item's status is a materialized view over its reservations. Every
writer of Item.status goes through here (or through the bulk validator)
so the stored status never silently drifts from the reservation set.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.database import transaction
from app.models.audit import AuditAction, STATUS_CHANGE_ACTIONS, AuditLog
from app.models.domain import Item, Reservation
from app.models.enums import ItemStatus, ReservationStatus
from app.services.audit import record_audit
from app.services.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Explicit states that a derived AVAILABLE never overrides
STICKY_STATUSES = (ItemStatus.MAINTENANCE, ItemStatus.RETIRED)

# Target statuses that take the item out of circulation
OUT_OF_CIRCULATION = (ItemStatus.RETIRED, ItemStatus.MAINTENANCE)

VALID_TRANSITIONS = {
    ItemStatus.AVAILABLE: (ItemStatus.RESERVED, ItemStatus.BORROWED, ItemStatus.MAINTENANCE, ItemStatus.RETIRED),
    ItemStatus.RESERVED: (ItemStatus.AVAILABLE, ItemStatus.BORROWED, ItemStatus.MAINTENANCE, ItemStatus.RETIRED),
    ItemStatus.BORROWED: (ItemStatus.AVAILABLE, ItemStatus.MAINTENANCE, ItemStatus.RETIRED),
    ItemStatus.MAINTENANCE: (ItemStatus.AVAILABLE, ItemStatus.RETIRED),
    ItemStatus.RETIRED: (ItemStatus.AVAILABLE, ItemStatus.MAINTENANCE),
}


def derive_status(
    reservation_statuses: Iterable[ReservationStatus],
    current_status: Optional[ItemStatus] = None,
    override: bool = False
) -> ItemStatus:
    """
    Compute the status an item should have from its reservations.

    First match wins:
    1. any ACTIVE reservation -> BORROWED
    2. any APPROVED or PENDING reservation -> RESERVED
    3. currently MAINTENANCE/RETIRED and no override -> unchanged
    4. otherwise -> AVAILABLE
    """
    statuses = set(reservation_statuses)
    if ReservationStatus.ACTIVE in statuses:
        return ItemStatus.BORROWED
    if ReservationStatus.APPROVED in statuses or ReservationStatus.PENDING in statuses:
        return ItemStatus.RESERVED
    if current_status in STICKY_STATUSES and not override:
        return current_status
    return ItemStatus.AVAILABLE


def parse_item_status(value) -> ItemStatus:
    if not value:
        raise ValidationError(
            "Valid status is required",
            valid_values=[s.value for s in ItemStatus]
        )
    try:
        return ItemStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {value}",
            valid_values=[s.value for s in ItemStatus]
        )


def parse_reservation_status(value) -> ReservationStatus:
    if not value:
        raise ValidationError("Reservation status is required")
    try:
        return ReservationStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid reservation status: {value}",
            valid_values=[s.value for s in ReservationStatus]
        )


def cancel_reservations(
    reservations: Iterable[Reservation],
    rejection_reason: str,
    now: datetime
) -> List[int]:
    """Cancel the given reservations in the current transaction."""
    cancelled = []
    for reservation in reservations:
        reservation.status = ReservationStatus.CANCELLED
        reservation.rejection_reason = rejection_reason
        reservation.updated_at = now
        cancelled.append(reservation.id)
    return cancelled


def _default_reason(new_status: ItemStatus, trigger: ReservationStatus) -> str:
    if new_status == ItemStatus.BORROWED:
        return "Item marked as borrowed due to active reservation"
    if new_status == ItemStatus.RESERVED:
        return "Item reserved due to approved or pending reservation"
    if new_status == ItemStatus.AVAILABLE:
        return f"Item returned to available status after reservation {trigger.value.lower()}"
    return "Automatic status update based on reservation change"


class StatusEngine:
    """Keeps Item.status consistent with reservations and validates staff edits."""

    def __init__(self, db: Session):
        self.db = db

    def get_item(self, item_id: int) -> Item:
        item = self.db.get(Item, item_id)
        if item is None:
            raise NotFoundError("Item not found")
        return item

    def apply_reconciliation(
        self,
        item: Item,
        reservation_status: ReservationStatus,
        acting_user_id: Optional[int],
        reason: Optional[str] = None,
        override: bool = False,
        now: Optional[datetime] = None
    ) -> dict:
        """
        Write the derived status and its audit row into the open transaction.

        Does not commit. Raises ConflictError when the item holds more than
        one ACTIVE reservation, since no single derived status is correct.
        """
        now = now or datetime.utcnow()
        open_reservations = item.open_reservations
        active_ids = [r.id for r in open_reservations if r.status == ReservationStatus.ACTIVE]
        if len(active_ids) > 1:
            logger.warning(
                "Item %s has %d concurrent active reservations; refusing to reconcile",
                item.id, len(active_ids)
            )
            raise ConflictError(
                "Item has more than one active reservation",
                suggestion="Complete or cancel the duplicate borrow first",
                conflicting_reservations=active_ids
            )

        previous = item.status
        new_status = derive_status(
            (r.status for r in open_reservations), previous, override=override
        )

        if new_status == previous:
            return {
                "itemId": item.id,
                "previousStatus": previous.value,
                "newStatus": previous.value,
                "changed": False,
                "reason": "No status change required",
            }

        update_reason = reason or _default_reason(new_status, reservation_status)
        item.status = new_status
        item.updated_at = now
        record_audit(
            self.db,
            AuditAction.AUTO_UPDATE_STATUS,
            "Item",
            item.id,
            acting_user_id,
            changes={
                "field": "status",
                "from": previous.value,
                "to": new_status.value,
                "reason": update_reason,
                "trigger": "reservation_change",
                "reservationStatus": reservation_status.value,
                "timestamp": now.isoformat(),
            },
            created_at=now
        )
        logger.info(
            "Reconciled item %s: %s -> %s (trigger %s)",
            item.id, previous.value, new_status.value, reservation_status.value
        )
        return {
            "itemId": item.id,
            "previousStatus": previous.value,
            "newStatus": new_status.value,
            "changed": True,
            "reason": update_reason,
        }

    def reconcile_item(
        self,
        item_id: int,
        reservation_status,
        acting_user_id: Optional[int],
        reason: Optional[str] = None,
        override: bool = False,
        now: Optional[datetime] = None
    ) -> dict:
        """
        Recompute and persist an item's status after a reservation change.

        The item update and its audit row commit together or not at all.
        """
        trigger = parse_reservation_status(reservation_status)
        item = self.get_item(item_id)
        try:
            with transaction(self.db):
                result = self.apply_reconciliation(
                    item, trigger, acting_user_id, reason=reason, override=override, now=now
                )
        except StaleDataError as exc:
            raise ConflictError(
                "Item was modified concurrently; retry the reconciliation"
            ) from exc
        return result

    def get_status_transition_recommendations(self, item_id: int) -> dict:
        """
        Read-only drift check plus next-step hints.

        A missing item yields currentStatus=None instead of raising so callers
        can tell "not found" apart from "no drift".
        """
        item = self.db.get(Item, item_id)
        if item is None:
            return {
                "itemId": item_id,
                "currentStatus": None,
                "recommendedStatus": None,
                "driftDetected": False,
                "recommendations": [],
            }

        open_reservations = item.open_reservations
        active = [r for r in open_reservations if r.status == ReservationStatus.ACTIVE]
        approved = [r for r in open_reservations if r.status == ReservationStatus.APPROVED]
        pending = [r for r in open_reservations if r.status == ReservationStatus.PENDING]

        recommended = derive_status((r.status for r in open_reservations), item.status)

        return {
            "itemId": item.id,
            "currentStatus": item.status.value,
            "recommendedStatus": recommended.value,
            "driftDetected": recommended != item.status,
            "recommendations": self._hints(item.status, active, approved, pending),
            "activeReservations": len(active),
            "approvedReservations": len(approved),
            "pendingReservations": len(pending),
        }

    def _hints(self, status, active, approved, pending) -> List[dict]:
        hints = []
        if status == ItemStatus.AVAILABLE:
            if pending:
                hints.append({
                    "status": ItemStatus.RESERVED.value,
                    "reason": "Approve pending reservations",
                    "priority": "medium",
                    "action": "approve_reservations",
                })
            hints.append({
                "status": ItemStatus.MAINTENANCE.value,
                "reason": "Schedule maintenance if needed",
                "priority": "low",
                "action": "schedule_maintenance",
            })
        elif status == ItemStatus.RESERVED:
            if approved:
                hints.append({
                    "status": ItemStatus.BORROWED.value,
                    "reason": "Mark as borrowed when picked up",
                    "priority": "high",
                    "action": "confirm_pickup",
                    "reservationIds": [r.id for r in approved],
                })
        elif status == ItemStatus.BORROWED:
            now = datetime.utcnow()
            overdue = [r for r in active if r.end_date < now]
            if overdue:
                hints.append({
                    "status": ItemStatus.AVAILABLE.value,
                    "reason": "Item is overdue for return",
                    "priority": "high",
                    "action": "process_return",
                    "reservationIds": [r.id for r in overdue],
                })
        elif status == ItemStatus.MAINTENANCE:
            hints.append({
                "status": ItemStatus.AVAILABLE.value,
                "reason": "Return to circulation after maintenance",
                "priority": "medium",
                "action": "complete_maintenance",
            })
        elif status == ItemStatus.RETIRED:
            hints.append({
                "status": ItemStatus.AVAILABLE.value,
                "reason": "Restore item to active inventory",
                "priority": "low",
                "action": "restore_item",
            })
        return hints

    def validate_status_change(self, item: Item, new_status: ItemStatus, force: bool = False) -> bool:
        """
        Check a staff-requested status edit against current reservations.

        Returns whether open reservations need cascading. Raises ConflictError
        on a refused transition; `force` is the admin override.
        """
        open_reservations = item.open_reservations
        open_ids = [r.id for r in open_reservations]

        if force:
            return bool(open_reservations)

        allowed = VALID_TRANSITIONS.get(item.status, ())
        if new_status not in allowed:
            raise ConflictError(
                f"Cannot transition from {item.status.value} to {new_status.value}",
                suggestion=(
                    f"Valid transitions from {item.status.value}: "
                    f"{', '.join(s.value for s in allowed) or 'none'}"
                )
            )

        if open_reservations:
            if new_status == ItemStatus.RETIRED:
                raise ConflictError(
                    "Cannot retire item with active reservations",
                    suggestion="Cancel or complete all reservations first",
                    conflicting_reservations=open_ids
                )
            if new_status == ItemStatus.MAINTENANCE and item.status == ItemStatus.BORROWED:
                raise ConflictError(
                    "Cannot move borrowed item to maintenance",
                    suggestion="Wait for item to be returned first",
                    conflicting_reservations=open_ids
                )

        if new_status == ItemStatus.BORROWED:
            if not any(r.status == ReservationStatus.ACTIVE for r in open_reservations):
                raise ConflictError(
                    "Cannot mark item as borrowed without an active reservation",
                    suggestion="Approve a reservation first"
                )

        return new_status in OUT_OF_CIRCULATION

    def set_item_status(
        self,
        item_id: int,
        new_status,
        acting_user_id: int,
        reason: Optional[str] = None,
        force: bool = False,
        now: Optional[datetime] = None
    ) -> dict:
        """Apply a direct staff edit of an item's status."""
        target = parse_item_status(new_status)
        item = self.get_item(item_id)
        requires_cascade = self.validate_status_change(item, target, force=force)

        now = now or datetime.utcnow()
        previous = item.status
        cancelled = []
        try:
            with transaction(self.db):
                item.status = target
                item.updated_at = now
                record_audit(
                    self.db,
                    AuditAction.UPDATE_STATUS,
                    "Item",
                    item.id,
                    acting_user_id,
                    changes={
                        "field": "status",
                        "from": previous.value,
                        "to": target.value,
                        "reason": reason or "No reason provided",
                        "forced": force,
                        "timestamp": now.isoformat(),
                    },
                    created_at=now
                )
                if requires_cascade and target in OUT_OF_CIRCULATION:
                    label = target.value.lower()
                    pending = [r for r in item.open_reservations if r.status == ReservationStatus.PENDING]
                    approved = [r for r in item.open_reservations if r.status == ReservationStatus.APPROVED]
                    cancelled += cancel_reservations(pending, f"Item moved to {label} status", now)
                    cancelled += cancel_reservations(
                        approved, f"Item became unavailable due to {label}", now
                    )
        except StaleDataError as exc:
            raise ConflictError("Item was modified concurrently; retry the update") from exc

        logger.info(
            "Item %s status set %s -> %s by user %s (cancelled reservations: %s)",
            item.id, previous.value, target.value, acting_user_id, cancelled
        )
        return {
            "itemId": item.id,
            "previousStatus": previous.value,
            "newStatus": target.value,
            "cancelledReservations": cancelled,
            "message": f"Item status updated to {target.value}",
        }

    def get_status_history(self, item_id: int, limit: int = 50) -> dict:
        item = self.get_item(item_id)
        logs = (
            self.db.query(AuditLog)
            .filter(
                AuditLog.entity_type == "Item",
                AuditLog.entity_id == str(item.id),
                AuditLog.action.in_(STATUS_CHANGE_ACTIONS)
            )
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
            .all()
        )
        return {
            "itemId": item.id,
            "currentStatus": item.status.value,
            "lastUpdated": item.updated_at,
            "statusHistory": [
                {
                    "id": log.id,
                    "action": log.action,
                    "from": (log.changes or {}).get("from"),
                    "to": (log.changes or {}).get("to"),
                    "reason": (log.changes or {}).get("reason"),
                    "userId": log.user_id,
                    "changedAt": log.created_at,
                }
                for log in logs
            ],
            "availableStatuses": [s.value for s in ItemStatus],
        }

    def delete_item(self, item_id: int, acting_user_id: int) -> None:
        """Delete an item together with its terminal reservations and returns."""
        item = self.get_item(item_id)
        open_ids = [r.id for r in item.open_reservations]
        if open_ids:
            raise ConflictError(
                "Cannot delete item with active or pending reservations",
                suggestion="Cancel or complete all reservations first",
                conflicting_reservations=open_ids
            )
        with transaction(self.db):
            record_audit(
                self.db,
                AuditAction.DELETE_ITEM,
                "Item",
                item.id,
                acting_user_id,
                changes={"name": item.name, "status": item.status.value}
            )
            self.db.delete(item)
        logger.info("Item %s deleted by user %s", item_id, acting_user_id)
