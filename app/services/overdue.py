"""
Overdue sweep processor.

Scans ACTIVE reservations whose end date has passed without a return,
issues scheduled late-return notices and applies trust-score penalties
for critically late borrowers. Both side effects are idempotent within
a rolling window via ActionMarker.
"""
import logging
import math
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from app.config import settings
from app.database import transaction
from app.models.audit import AuditAction, MarkerKind
from app.models.domain import Reservation, TRUST_SCORE_MIN
from app.models.enums import NotificationType, OverdueSeverity, ReservationStatus
from app.services.audit import action_taken_since, mark_action, record_audit, window_start
from app.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# Fixed escalation days; any other day sends nothing
NOTIFICATION_SCHEDULE = {
    1: NotificationType.REMINDER,
    2: NotificationType.REMINDER,
    5: NotificationType.WARNING,
    7: NotificationType.WARNING,
    10: NotificationType.FINAL_NOTICE,
    14: NotificationType.FINAL_NOTICE,
}

CRITICAL_OVERDUE_DAYS = 14
PENALTY_PER_DAY = 0.5
MAX_PENALTY = 15.0


def days_overdue(end_date: datetime, now: datetime) -> int:
    """Whole days past end_date, partial days rounded up."""
    return math.ceil((now - end_date).total_seconds() / SECONDS_PER_DAY)


def notification_type_for(days: int) -> Optional[NotificationType]:
    return NOTIFICATION_SCHEDULE.get(days)


def is_critical(days: int) -> bool:
    return days > CRITICAL_OVERDUE_DAYS


def penalty_for(days: int) -> float:
    return min(days * PENALTY_PER_DAY, MAX_PENALTY)


def severity_for(days: int) -> OverdueSeverity:
    if days <= 3:
        return OverdueSeverity.MODERATE
    if days <= 7:
        return OverdueSeverity.HIGH
    return OverdueSeverity.CRITICAL


def apply_penalty(score: float, penalty: float) -> float:
    return max(TRUST_SCORE_MIN, score - penalty)


class OverdueSweep:
    """Finds overdue borrows and applies notices and penalties."""

    def __init__(self, db: Session, window_hours: Optional[int] = None):
        self.db = db
        self.window_hours = window_hours or settings.idempotency_window_hours

    def find_overdue(
        self,
        now: datetime,
        user_id: Optional[int] = None,
        item_id: Optional[int] = None
    ) -> List[Reservation]:
        """ACTIVE reservations past their end date with no return recorded, oldest first."""
        query = (
            self.db.query(Reservation)
            .options(joinedload(Reservation.item), joinedload(Reservation.user))
            .filter(
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.end_date < now,
                ~Reservation.returns.any()
            )
        )
        if user_id is not None:
            query = query.filter(Reservation.user_id == user_id)
        if item_id is not None:
            query = query.filter(Reservation.item_id == item_id)
        return query.order_by(Reservation.end_date.asc(), Reservation.id.asc()).all()

    def run(self, acting_user_id: Optional[int] = None, now: Optional[datetime] = None) -> dict:
        """
        Run one sweep. All notices, penalties and their audit rows commit together.

        acting_user_id is None when the scheduler triggers the sweep.
        """
        now = now or datetime.utcnow()
        since = window_start(now, self.window_hours)
        overdue = self.find_overdue(now)
        logger.info("Overdue sweep found %d overdue reservations", len(overdue))

        notifications = []
        penalties = []
        severity_counts = {s.value.lower(): 0 for s in OverdueSeverity}

        with transaction(self.db):
            for reservation in overdue:
                days = days_overdue(reservation.end_date, now)
                severity_counts[severity_for(days).value.lower()] += 1

                notice = self._send_scheduled_notice(reservation, days, acting_user_id, now, since)
                if notice:
                    notifications.append(notice)

                if is_critical(days):
                    penalty = self._apply_critical_penalty(reservation, days, acting_user_id, now, since)
                    if penalty:
                        penalties.append(penalty)

        logger.info(
            "Overdue sweep complete: %d notifications, %d penalties",
            len(notifications), len(penalties)
        )
        if overdue:
            message = (
                f"Automated tracking completed. Sent {len(notifications)} notifications "
                f"and applied {len(penalties)} penalties."
            )
        else:
            message = "No overdue reservations found"
        return {
            "success": True,
            "message": message,
            "summary": {
                "totalOverdueReservations": len(overdue),
                "notificationsSent": len(notifications),
                "trustScorePenaltiesApplied": len(penalties),
                "bySeverity": severity_counts,
            },
            "notifications": notifications,
            "trustScoreUpdates": penalties,
            "processedAt": now.isoformat(),
        }

    def _send_scheduled_notice(self, reservation, days, acting_user_id, now, since) -> Optional[dict]:
        notification_type = notification_type_for(days)
        if notification_type is None:
            return None
        if action_taken_since(
            self.db, "Reservation", reservation.id, MarkerKind.LATE_RETURN_NOTIFICATION, since
        ):
            logger.debug("Reservation %s already notified within window", reservation.id)
            return None

        log = record_audit(
            self.db,
            AuditAction.SEND_LATE_RETURN_NOTIFICATION_AUTO,
            "Reservation",
            reservation.id,
            acting_user_id,
            changes={
                "notificationType": notification_type.value,
                "daysOverdue": days,
                "itemName": reservation.item.name,
                "borrowerEmail": reservation.user.email,
                "automatedAt": now.isoformat(),
                "scheduledBy": "SYSTEM",
            },
            created_at=now
        )
        mark_action(
            self.db, "Reservation", reservation.id, MarkerKind.LATE_RETURN_NOTIFICATION, now, log
        )
        logger.info(
            "Queued %s notice for reservation %s (%d days overdue)",
            notification_type.value, reservation.id, days
        )
        return {
            "reservationId": reservation.id,
            "itemName": reservation.item.name,
            "borrowerName": reservation.user.name,
            "borrowerEmail": reservation.user.email,
            "daysOverdue": days,
            "notificationType": notification_type.value,
            "auditLogId": log.id,
        }

    def _apply_critical_penalty(self, reservation, days, acting_user_id, now, since) -> Optional[dict]:
        if action_taken_since(
            self.db, "Reservation", reservation.id, MarkerKind.CRITICAL_OVERDUE_PENALTY, since
        ):
            logger.debug("Reservation %s already penalised within window", reservation.id)
            return None

        user = reservation.user
        penalty = penalty_for(days)
        previous = user.trust_score
        user.trust_score = apply_penalty(previous, penalty)
        user.updated_at = now

        log = record_audit(
            self.db,
            AuditAction.APPLY_CRITICAL_OVERDUE_PENALTY,
            "Reservation",
            reservation.id,
            acting_user_id,
            changes={
                "userId": user.id,
                "previousTrustScore": previous,
                "penaltyAmount": penalty,
                "newTrustScore": user.trust_score,
                "daysOverdue": days,
                "reason": f"Critical overdue penalty - {days} days late",
                "automatedAt": now.isoformat(),
            },
            created_at=now
        )
        mark_action(
            self.db, "Reservation", reservation.id, MarkerKind.CRITICAL_OVERDUE_PENALTY, now, log
        )
        logger.warning(
            "Trust score penalty %.1f applied to user %s (%.1f -> %.1f)",
            penalty, user.id, previous, user.trust_score
        )
        return {
            "userId": user.id,
            "userName": user.name,
            "reservationId": reservation.id,
            "penaltyApplied": penalty,
            "previousTrustScore": previous,
            "newTrustScore": user.trust_score,
            "daysOverdue": days,
        }

    def list_overdue(
        self,
        severity: Optional[str] = None,
        user_id: Optional[int] = None,
        item_id: Optional[int] = None,
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None
    ) -> dict:
        """Overdue reservations with severity metrics, filtered and paginated."""
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        wanted = None
        if severity and severity.upper() != "ALL":
            try:
                wanted = OverdueSeverity(severity.upper())
            except ValueError:
                raise ValidationError(
                    f"Invalid severity: {severity}",
                    valid_values=["ALL"] + [s.value for s in OverdueSeverity]
                )

        now = now or datetime.utcnow()
        rows = []
        for reservation in self.find_overdue(now, user_id=user_id, item_id=item_id):
            days = days_overdue(reservation.end_date, now)
            rows.append({
                "reservationId": reservation.id,
                "itemId": reservation.item_id,
                "itemName": reservation.item.name,
                "userId": reservation.user_id,
                "borrowerName": reservation.user.name,
                "borrowerEmail": reservation.user.email,
                "trustScore": reservation.user.trust_score,
                "endDate": reservation.end_date,
                "daysOverdue": days,
                "severity": severity_for(days).value,
                "potentialPenalty": penalty_for(days) if is_critical(days) else 0.0,
            })

        analytics = {
            "totalOverdue": len(rows),
            "bySeverity": {
                s.value.lower(): sum(1 for r in rows if r["severity"] == s.value)
                for s in OverdueSeverity
            },
            "averageDaysOverdue": (
                sum(r["daysOverdue"] for r in rows) / len(rows) if rows else 0
            ),
            "totalPotentialPenalty": sum(r["potentialPenalty"] for r in rows),
            "affectedUsers": len({r["userId"] for r in rows}),
            "topOverdueItems": [
                {
                    "itemId": r["itemId"],
                    "itemName": r["itemName"],
                    "daysOverdue": r["daysOverdue"],
                    "borrowerName": r["borrowerName"],
                }
                for r in sorted(rows, key=lambda r: r["daysOverdue"], reverse=True)[:5]
            ],
        }

        filtered = [r for r in rows if wanted is None or r["severity"] == wanted.value]
        offset = (page - 1) * limit
        return {
            "overdueReservations": filtered[offset:offset + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": len(filtered),
                "pages": math.ceil(len(filtered) / limit),
            },
            "analytics": analytics,
        }

    def send_notifications(
        self,
        reservation_ids: List[int],
        notification_type,
        acting_user_id: int,
        custom_message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> dict:
        """Staff-initiated late-return notices for the given ACTIVE reservations."""
        if not reservation_ids:
            raise ValidationError("At least one reservation ID is required")
        try:
            notification_type = NotificationType(notification_type)
        except ValueError:
            raise ValidationError(
                f"Invalid notification type: {notification_type}",
                valid_values=[t.value for t in NotificationType]
            )

        reservations = (
            self.db.query(Reservation)
            .options(joinedload(Reservation.item), joinedload(Reservation.user))
            .filter(
                Reservation.id.in_(reservation_ids),
                Reservation.status == ReservationStatus.ACTIVE
            )
            .order_by(Reservation.id.asc())
            .all()
        )
        if not reservations:
            raise NotFoundError("No valid active reservations found")

        now = now or datetime.utcnow()
        sent = []
        with transaction(self.db):
            for reservation in reservations:
                days = days_overdue(reservation.end_date, now)
                log = record_audit(
                    self.db,
                    AuditAction.SEND_LATE_RETURN_NOTIFICATION,
                    "Reservation",
                    reservation.id,
                    acting_user_id,
                    changes={
                        "notificationType": notification_type.value,
                        "daysOverdue": days,
                        "itemName": reservation.item.name,
                        "borrowerEmail": reservation.user.email,
                        "customMessage": custom_message,
                        "sentAt": now.isoformat(),
                    },
                    created_at=now
                )
                mark_action(
                    self.db, "Reservation", reservation.id,
                    MarkerKind.LATE_RETURN_NOTIFICATION, now, log
                )
                sent.append({
                    "reservationId": reservation.id,
                    "itemName": reservation.item.name,
                    "borrowerName": reservation.user.name,
                    "borrowerEmail": reservation.user.email,
                    "daysOverdue": days,
                    "notificationType": notification_type.value,
                    "auditLogId": log.id,
                })

        logger.info(
            "User %s sent %d %s notices", acting_user_id, len(sent), notification_type.value
        )
        return {
            "success": True,
            "message": (
                f"Sent {notification_type.value.lower()} notifications to {len(sent)} borrowers"
            ),
            "notifications": sent,
        }
