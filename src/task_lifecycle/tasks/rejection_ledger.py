# src/task_lifecycle/tasks/rejection_ledger.py

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from ..core.errors import ValidationError
from ..core.ports import TaskGateway
from ..core.retry import NO_RETRY, RetryPolicy
from .task_models import RejectionRecord, Task

logger = logging.getLogger(__name__)


class RejectionLedger:
    """
    Append-only audit trail of review rejections.

    Records are never edited or removed. append_rejection is idempotent by
    record id at the gateway, so a retried append cannot duplicate an entry.
    """

    def __init__(self, gateway: TaskGateway, *, retry: RetryPolicy = NO_RETRY) -> None:
        self._gateway = gateway
        self._retry = retry

    def record(
        self,
        task: Task,
        reviewer_id: str,
        reviewer_name: str | None,
        reason: str,
        *,
        at: datetime | None = None,
        record_id: str | None = None,
    ) -> RejectionRecord:
        text = (reason or "").strip()
        if not text:
            raise ValidationError(
                "A rejection reason is required",
                task_id=task.id,
                action="reject",
                actor_id=reviewer_id,
            )

        rec = RejectionRecord(
            id=record_id or uuid.uuid4().hex,
            task_id=task.id,
            reviewer_id=reviewer_id,
            reviewer_name=reviewer_name,
            reason=text,
            timestamp=at or datetime.now(UTC),
        )
        self._retry.call(self._gateway.append_rejection, rec)
        logger.info("Rejection recorded id=%s task_id=%s reviewer=%s", rec.id, task.id, reviewer_id)
        return rec

    def list_rejections(self, task_id: str) -> list[RejectionRecord]:
        records = self._retry.call(self._gateway.list_rejections, task_id)
        # Stable sort: ties keep the gateway's insertion order.
        return sorted(records, key=lambda r: r.timestamp)
