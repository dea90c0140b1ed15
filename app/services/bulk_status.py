"""
Bulk status transitions.

Each requested item is classified independently (updated, skipped or
failed); the accepted ones are then applied in a single transaction.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.database import transaction
from app.models.audit import AuditAction
from app.models.domain import Item
from app.services.audit import record_audit
from app.services.errors import ConflictError, NotFoundError, ValidationError
from app.services.status_engine import OUT_OF_CIRCULATION, cancel_reservations, parse_item_status

logger = logging.getLogger(__name__)


class BulkStatusUpdater:
    """Validates and applies one target status to many items."""

    def __init__(self, db: Session, max_items: Optional[int] = None):
        self.db = db
        self.max_items = max_items or settings.bulk_max_items

    def _validate_request(self, item_ids, status):
        if not isinstance(item_ids, (list, tuple)) or len(item_ids) == 0:
            raise ValidationError("Item IDs array is required")
        target = parse_item_status(status)
        if len(item_ids) > self.max_items:
            raise ValidationError(f"Maximum {self.max_items} items can be updated at once")
        if len(set(item_ids)) != len(item_ids):
            raise ValidationError("Item IDs must be unique")
        return target

    def _load_items(self, item_ids: List[int]) -> List[Item]:
        """Fetch all requested items in request order, or fail listing the missing ones."""
        items = (
            self.db.query(Item)
            .options(selectinload(Item.reservations))
            .filter(Item.id.in_(item_ids))
            .all()
        )
        by_id = {item.id: item for item in items}
        missing = [item_id for item_id in item_ids if item_id not in by_id]
        if missing:
            raise NotFoundError("Some items not found or not accessible", missing_ids=missing)
        return [by_id[item_id] for item_id in item_ids]

    def classify(self, items: List[Item], target):
        """Split items into (accepted, skipped, failed) without touching the database."""
        accepted, skipped, failed = [], [], []
        for item in items:
            if item.status == target:
                skipped.append({
                    "id": item.id,
                    "name": item.name,
                    "reason": "Already has target status",
                })
                continue

            holds = item.open_reservations
            if target in OUT_OF_CIRCULATION and holds:
                failed.append({
                    "id": item.id,
                    "name": item.name,
                    "currentStatus": item.status.value,
                    "error": f"Cannot change to {target.value} with active reservations",
                    "reservationCount": len(holds),
                })
                continue

            accepted.append(item)
        return accepted, skipped, failed

    def update(
        self,
        item_ids: List[int],
        status,
        acting_user_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> dict:
        """
        Apply `status` to every acceptable item in one transaction.

        The request is rejected outright (nothing written) for an empty or
        oversized batch, an unknown status, or any unknown item id.
        Per-item conflicts are reported in `failed` and do not fail the batch.
        """
        target = self._validate_request(item_ids, status)
        items = self._load_items(list(item_ids))
        accepted, skipped, failed = self.classify(items, target)

        now = now or datetime.utcnow()
        updated = []
        if accepted:
            try:
                with transaction(self.db):
                    updated = self._apply(accepted, target, acting_user_id, reason, now)
            except StaleDataError as exc:
                raise ConflictError(
                    "One or more items were modified concurrently; retry the bulk update"
                ) from exc

        if failed:
            logger.warning(
                "Bulk update to %s refused for items %s",
                target.value, [f["id"] for f in failed]
            )
        logger.info(
            "Bulk update to %s by user %s: %d updated, %d skipped, %d failed",
            target.value, acting_user_id, len(updated), len(skipped), len(failed)
        )
        return {
            "success": True,
            "message": f"Successfully updated {len(updated)} items to {target.value}",
            "results": {
                "updated": updated,
                "skipped": skipped,
                "failed": failed,
            },
            "summary": {
                "total": len(item_ids),
                "updated": len(updated),
                "skipped": len(skipped),
                "failed": len(failed),
            },
        }

    def _apply(self, accepted, target, acting_user_id, reason, now) -> List[dict]:
        updated = []
        for item in accepted:
            previous = item.status
            holds = item.open_reservations
            item.status = target
            item.updated_at = now
            record_audit(
                self.db,
                AuditAction.BULK_UPDATE_STATUS,
                "Item",
                item.id,
                acting_user_id,
                changes={
                    "field": "status",
                    "from": previous.value,
                    "to": target.value,
                    "reason": reason or "Bulk status update",
                    "timestamp": now.isoformat(),
                    "bulkOperation": True,
                },
                created_at=now
            )
            if target in OUT_OF_CIRCULATION and holds:
                cancel_reservations(
                    holds,
                    f"Item moved to {target.value.lower()} status via bulk update",
                    now
                )
            updated.append({
                "id": item.id,
                "name": item.name,
                "previousStatus": previous.value,
                "newStatus": target.value,
                "updated": True,
            })
        return updated
