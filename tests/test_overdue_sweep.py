"""Tests for the overdue sweep: notice schedule, penalties and idempotency."""
from datetime import timedelta

import pytest

from app.models.audit import AuditAction, AuditLog
from app.models.domain import Return
from app.models.enums import ItemCondition, NotificationType, ReservationStatus
from app.services.errors import NotFoundError, ValidationError
from app.services.overdue import (
    OverdueSweep,
    days_overdue,
    notification_type_for,
    penalty_for,
    severity_for,
)
from conftest import NOW, audit_count


class TestSchedule:

    @pytest.mark.parametrize("days,expected", [
        (1, NotificationType.REMINDER),
        (2, NotificationType.REMINDER),
        (3, None),
        (4, None),
        (5, NotificationType.WARNING),
        (6, None),
        (7, NotificationType.WARNING),
        (10, NotificationType.FINAL_NOTICE),
        (14, NotificationType.FINAL_NOTICE),
        (15, None),
        (21, None),
    ])
    def test_fixed_notification_days(self, days, expected):
        assert notification_type_for(days) == expected

    def test_partial_days_round_up(self):
        assert days_overdue(NOW - timedelta(hours=1), NOW) == 1
        assert days_overdue(NOW - timedelta(days=3), NOW) == 3
        assert days_overdue(NOW - timedelta(days=3, minutes=1), NOW) == 4

    def test_penalty_is_capped(self):
        assert penalty_for(15) == 7.5
        assert penalty_for(30) == 15
        assert penalty_for(100) == 15

    @pytest.mark.parametrize("days,severity", [(1, "MODERATE"), (3, "MODERATE"), (4, "HIGH"), (7, "HIGH"), (8, "CRITICAL")])
    def test_day_based_severity_buckets(self, days, severity):
        assert severity_for(days).value == severity


class TestSweep:

    def test_three_days_overdue_does_nothing(self, db_session, item, make_reservation, borrower):
        make_reservation(item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=3))

        result = OverdueSweep(db_session).run(now=NOW)

        assert result["summary"]["totalOverdueReservations"] == 1
        assert result["summary"]["notificationsSent"] == 0
        assert result["summary"]["trustScorePenaltiesApplied"] == 0
        assert result["summary"]["bySeverity"] == {"moderate": 1, "high": 0, "critical": 0}
        db_session.refresh(borrower)
        assert borrower.trust_score == 100.0

    def test_fifteen_days_overdue_applies_penalty(self, db_session, item, make_reservation, borrower, staff_user):
        reservation = make_reservation(item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=15))

        result = OverdueSweep(db_session).run(acting_user_id=staff_user.id, now=NOW)

        db_session.refresh(borrower)
        assert borrower.trust_score == 92.5
        assert result["summary"]["trustScorePenaltiesApplied"] == 1
        assert result["summary"]["bySeverity"]["critical"] == 1
        assert result["trustScoreUpdates"][0]["penaltyApplied"] == 7.5

        audit = db_session.query(AuditLog).filter(
            AuditLog.action == AuditAction.APPLY_CRITICAL_OVERDUE_PENALTY
        ).one()
        assert audit.entity_id == str(reservation.id)
        assert audit.user_id == staff_user.id
        assert audit.changes["previousTrustScore"] == 100.0
        assert audit.changes["penaltyAmount"] == 7.5
        assert audit.changes["newTrustScore"] == 92.5

    def test_reminder_on_first_day(self, db_session, item, make_reservation):
        reservation = make_reservation(item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(hours=5))

        result = OverdueSweep(db_session).run(now=NOW)

        assert result["summary"]["notificationsSent"] == 1
        notice = result["notifications"][0]
        assert notice["reservationId"] == reservation.id
        assert notice["notificationType"] == "REMINDER"
        assert audit_count(db_session, AuditAction.SEND_LATE_RETURN_NOTIFICATION_AUTO, reservation.id) == 1

    def test_second_run_in_window_is_a_no_op(self, db_session, make_item, make_reservation, borrower):
        first_item = make_item(name="Tripod")
        second_item = make_item(name="Drone")
        # Still on a reminder day an hour later
        make_reservation(first_item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=1, hours=12))
        make_reservation(second_item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=20))
        sweep = OverdueSweep(db_session)

        first = sweep.run(now=NOW)
        second = sweep.run(now=NOW + timedelta(hours=1))

        assert first["summary"]["notificationsSent"] == 1
        assert first["summary"]["trustScorePenaltiesApplied"] == 1
        assert second["summary"]["totalOverdueReservations"] == 2
        assert second["summary"]["notificationsSent"] == 0
        assert second["summary"]["trustScorePenaltiesApplied"] == 0
        db_session.refresh(borrower)
        assert borrower.trust_score == 90.0
        assert audit_count(db_session) == 2

    def test_penalty_repeats_after_window(self, db_session, item, make_reservation, borrower):
        make_reservation(item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=15))
        sweep = OverdueSweep(db_session)

        sweep.run(now=NOW)
        later = sweep.run(now=NOW + timedelta(hours=25))

        assert later["trustScoreUpdates"][0]["daysOverdue"] == 17
        db_session.refresh(borrower)
        assert borrower.trust_score == pytest.approx(100 - 7.5 - 8.5)

    def test_trust_score_never_below_zero(self, db_session, make_item, make_reservation, borrower):
        borrower.trust_score = 10.0
        db_session.commit()
        for name in ("Lens", "Mic"):
            make_reservation(make_item(name=name), status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=40))

        result = OverdueSweep(db_session).run(now=NOW)

        db_session.refresh(borrower)
        assert result["summary"]["trustScorePenaltiesApplied"] == 2
        assert borrower.trust_score == 0.0

    def test_returned_or_future_reservations_are_ignored(self, db_session, make_item, make_reservation, borrower):
        returned = make_reservation(make_item(name="Laptop"), status=ReservationStatus.ACTIVE,
                                    end_date=NOW - timedelta(days=20))
        db_session.add(Return(
            reservation_id=returned.id,
            item_id=returned.item_id,
            user_id=borrower.id,
            return_date=NOW - timedelta(days=1),
            condition_on_return=ItemCondition.GOOD
        ))
        db_session.commit()
        make_reservation(make_item(name="Projector"), status=ReservationStatus.ACTIVE,
                         end_date=NOW + timedelta(days=1))
        make_reservation(make_item(name="Speaker"), status=ReservationStatus.APPROVED,
                         end_date=NOW - timedelta(days=20))

        result = OverdueSweep(db_session).run(now=NOW)

        assert result["summary"]["totalOverdueReservations"] == 0
        assert result["message"] == "No overdue reservations found"

    def test_manual_notice_suppresses_automatic_one(self, db_session, item, make_reservation, staff_user):
        reservation = make_reservation(item, status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=5))
        sweep = OverdueSweep(db_session)

        sweep.send_notifications([reservation.id], "WARNING", staff_user.id, now=NOW - timedelta(hours=2))
        result = sweep.run(now=NOW)

        assert result["summary"]["notificationsSent"] == 0


class TestOverdueListing:

    def test_listing_reports_severity_and_analytics(self, db_session, make_item, make_reservation):
        make_reservation(make_item(name="A"), status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=2))
        make_reservation(make_item(name="B"), status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=6))
        make_reservation(make_item(name="C"), status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=16))

        result = OverdueSweep(db_session).list_overdue(now=NOW)

        assert [r["severity"] for r in result["overdueReservations"]] == ["CRITICAL", "HIGH", "MODERATE"]
        assert result["analytics"]["bySeverity"] == {"moderate": 1, "high": 1, "critical": 1}
        assert result["analytics"]["averageDaysOverdue"] == 8
        assert result["analytics"]["totalPotentialPenalty"] == 8.0
        assert result["analytics"]["topOverdueItems"][0]["itemName"] == "C"

    def test_severity_filter(self, db_session, make_item, make_reservation):
        make_reservation(make_item(name="A"), status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=2))
        make_reservation(make_item(name="B"), status=ReservationStatus.ACTIVE, end_date=NOW - timedelta(days=9))

        result = OverdueSweep(db_session).list_overdue(severity="critical", now=NOW)

        assert len(result["overdueReservations"]) == 1
        assert result["overdueReservations"][0]["itemName"] == "B"
        assert result["pagination"]["total"] == 1

    def test_unknown_severity_rejected(self, db_session):
        with pytest.raises(ValidationError):
            OverdueSweep(db_session).list_overdue(severity="EXTREME", now=NOW)


class TestManualNotifications:

    def test_notices_for_active_reservations_only(self, db_session, make_item, make_reservation, staff_user):
        active = make_reservation(make_item(name="A"), status=ReservationStatus.ACTIVE,
                                  end_date=NOW - timedelta(days=4))
        pending = make_reservation(make_item(name="B"), status=ReservationStatus.PENDING)

        result = OverdueSweep(db_session).send_notifications(
            [active.id, pending.id], "FINAL_NOTICE", staff_user.id, custom_message="Please return", now=NOW
        )

        assert [n["reservationId"] for n in result["notifications"]] == [active.id]
        log = db_session.query(AuditLog).filter(
            AuditLog.action == AuditAction.SEND_LATE_RETURN_NOTIFICATION
        ).one()
        assert log.changes["customMessage"] == "Please return"
        assert log.changes["daysOverdue"] == 4

    def test_no_active_reservations_is_not_found(self, db_session, item, make_reservation, staff_user):
        pending = make_reservation(item, status=ReservationStatus.PENDING)
        with pytest.raises(NotFoundError):
            OverdueSweep(db_session).send_notifications([pending.id], "REMINDER", staff_user.id)

    @pytest.mark.parametrize("ids,kind", [([], "REMINDER"), ([1], "SHOUT")])
    def test_bad_input_rejected(self, db_session, ids, kind):
        with pytest.raises(ValidationError):
            OverdueSweep(db_session).send_notifications(ids, kind, 1)
