"""Tests for bulk status transitions: classification, validation and atomicity."""
import pytest

from app.models.audit import AuditAction, AuditLog
from app.models.domain import Item
from app.models.enums import ItemStatus, ReservationStatus
from app.services import bulk_status
from app.services.bulk_status import BulkStatusUpdater
from app.services.errors import ConflictError, NotFoundError, ValidationError
from conftest import audit_count, commit_rival_status


class TestClassification:

    def test_already_at_target_is_skipped(self, db_session, make_item, staff_user):
        already = make_item(name="A", status=ItemStatus.AVAILABLE)
        in_repair = make_item(name="B", status=ItemStatus.MAINTENANCE)
        retired = make_item(name="C", status=ItemStatus.RETIRED)

        result = BulkStatusUpdater(db_session).update(
            [already.id, in_repair.id, retired.id], "AVAILABLE", staff_user.id
        )

        assert [s["id"] for s in result["results"]["skipped"]] == [already.id]
        assert [u["id"] for u in result["results"]["updated"]] == [in_repair.id, retired.id]
        assert result["summary"] == {"total": 3, "updated": 2, "skipped": 1, "failed": 0}

        for item in (in_repair, retired):
            db_session.refresh(item)
            assert item.status == ItemStatus.AVAILABLE
            log = db_session.query(AuditLog).filter(
                AuditLog.action == AuditAction.BULK_UPDATE_STATUS,
                AuditLog.entity_id == str(item.id)
            ).one()
            assert log.changes["bulkOperation"] is True
            assert log.changes["to"] == "AVAILABLE"
            assert log.changes["reason"] == "Bulk status update"
        assert audit_count(db_session, entity_id=already.id) == 0

    @pytest.mark.parametrize("target", ["RETIRED", "MAINTENANCE"])
    @pytest.mark.parametrize("hold", [
        ReservationStatus.PENDING, ReservationStatus.APPROVED, ReservationStatus.ACTIVE
    ])
    def test_held_items_cannot_leave_circulation(self, db_session, item, make_reservation, staff_user, target, hold):
        make_reservation(item, status=hold)

        result = BulkStatusUpdater(db_session).update([item.id], target, staff_user.id)

        assert result["results"]["updated"] == []
        failure = result["results"]["failed"][0]
        assert failure["id"] == item.id
        assert failure["reservationCount"] == 1
        assert target in failure["error"]
        db_session.refresh(item)
        assert item.status == ItemStatus.AVAILABLE

    def test_every_item_lands_in_exactly_one_bucket(self, db_session, make_item, make_reservation, staff_user):
        items = [make_item(name=f"Item {n}") for n in range(5)]
        make_reservation(items[1], status=ReservationStatus.PENDING)
        make_reservation(items[2], status=ReservationStatus.ACTIVE)
        items[3].status = ItemStatus.MAINTENANCE
        db_session.commit()
        ids = [i.id for i in items]

        result = BulkStatusUpdater(db_session).update(ids, "MAINTENANCE", staff_user.id, reason="Annual check")
        buckets = result["results"]

        assert len(buckets["updated"]) + len(buckets["skipped"]) + len(buckets["failed"]) == len(ids)
        assert {u["id"] for u in buckets["updated"]} == {items[0].id, items[4].id}
        assert {s["id"] for s in buckets["skipped"]} == {items[3].id}
        assert {f["id"] for f in buckets["failed"]} == {items[1].id, items[2].id}

    def test_terminal_reservations_do_not_block_or_change(self, db_session, item, make_reservation, staff_user):
        done = make_reservation(item, status=ReservationStatus.COMPLETED)

        result = BulkStatusUpdater(db_session).update([item.id], "RETIRED", staff_user.id)

        db_session.refresh(done)
        assert result["summary"]["updated"] == 1
        assert done.status == ReservationStatus.COMPLETED
        assert done.rejection_reason is None


class TestRequestValidation:

    def test_empty_list_rejected(self, db_session, staff_user):
        with pytest.raises(ValidationError):
            BulkStatusUpdater(db_session).update([], "AVAILABLE", staff_user.id)

    def test_unknown_status_rejected(self, db_session, item, staff_user):
        with pytest.raises(ValidationError) as exc_info:
            BulkStatusUpdater(db_session).update([item.id], "LOST", staff_user.id)
        assert exc_info.value.valid_values == [s.value for s in ItemStatus]

    def test_oversized_batch_rejected(self, db_session, staff_user):
        with pytest.raises(ValidationError) as exc_info:
            BulkStatusUpdater(db_session).update(list(range(1, 102)), "AVAILABLE", staff_user.id)
        assert "Maximum 100" in str(exc_info.value)

    def test_duplicate_ids_rejected(self, db_session, item, staff_user):
        with pytest.raises(ValidationError):
            BulkStatusUpdater(db_session).update([item.id, item.id], "RETIRED", staff_user.id)

    def test_missing_items_abort_whole_request(self, db_session, make_item, staff_user):
        present = make_item(status=ItemStatus.MAINTENANCE)

        with pytest.raises(NotFoundError) as exc_info:
            BulkStatusUpdater(db_session).update([present.id, 777, 778], "AVAILABLE", staff_user.id)

        assert exc_info.value.missing_ids == [777, 778]
        db_session.refresh(present)
        assert present.status == ItemStatus.MAINTENANCE
        assert audit_count(db_session) == 0


class TestAtomicity:

    def test_failure_mid_apply_rolls_back_every_item(self, db_session, make_item, staff_user, monkeypatch):
        items = [make_item(name=f"Item {n}", status=ItemStatus.MAINTENANCE) for n in range(3)]
        real_record_audit = bulk_status.record_audit
        calls = []

        def failing_record_audit(*args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return real_record_audit(*args, **kwargs)

        monkeypatch.setattr(bulk_status, "record_audit", failing_record_audit)

        with pytest.raises(RuntimeError):
            BulkStatusUpdater(db_session).update([i.id for i in items], "AVAILABLE", staff_user.id)

        for item in items:
            assert db_session.get(Item, item.id).status == ItemStatus.MAINTENANCE
        assert audit_count(db_session) == 0

    def test_stale_item_aborts_the_batch(self, db_session, other_session, make_item, staff_user):
        first = make_item(name="Tent", status=ItemStatus.MAINTENANCE)
        second = make_item(name="Stove", status=ItemStatus.MAINTENANCE)
        assert first.status == second.status == ItemStatus.MAINTENANCE
        commit_rival_status(other_session, second.id, ItemStatus.RETIRED)

        with pytest.raises(ConflictError) as exc_info:
            BulkStatusUpdater(db_session).update([first.id, second.id], "AVAILABLE", staff_user.id)

        assert "modified concurrently" in str(exc_info.value)
        assert audit_count(db_session) == 0
        assert db_session.get(Item, first.id).status == ItemStatus.MAINTENANCE
        assert db_session.get(Item, second.id).status == ItemStatus.RETIRED
