"""Event deduplication backed by a create-if-absent marker row.

A delivery claims ``(source, event_id)`` before any side effect runs. The
claim is committed on its own so a racing duplicate sees it immediately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import ensure_utc, now_utc
from orderflow.persistence.models import ProcessedEventModel
from orderflow.persistence.pg import insert_if_absent

logger = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
COMPLETE = "complete"

CLAIMED = "claimed"
DUPLICATE = "duplicate"
BUSY = "in_progress"


@dataclass
class ClaimResult:
    state: str
    attempts: int = 1
    outcome: dict[str, Any] = field(default_factory=dict)

    @property
    def claimed(self) -> bool:
        return self.state == CLAIMED


def claim(
    session: Session,
    source: str,
    event_id: str,
    event_type: str,
    *,
    lease_seconds: int = 300,
    now: datetime | None = None,
    payload_sha256: str | None = None,
) -> ClaimResult:
    now = now or now_utc()
    inserted = insert_if_absent(
        session,
        ProcessedEventModel,
        {
            "source": source,
            "event_id": event_id,
            "event_type": event_type,
            "status": IN_PROGRESS,
            "outcome": {},
            "attempts": 1,
            "claimed_at": now,
            "payload_sha256": payload_sha256,
        },
        index_elements=["source", "event_id"],
    )
    if inserted:
        return ClaimResult(CLAIMED)

    marker = session.scalar(
        select(ProcessedEventModel)
        .where(ProcessedEventModel.source == source, ProcessedEventModel.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    if marker is None:
        # Released between our insert attempt and the read; the sender will retry.
        return ClaimResult(BUSY)
    if marker.status == COMPLETE:
        return ClaimResult(DUPLICATE, attempts=marker.attempts, outcome=dict(marker.outcome or {}))

    claimed_at = ensure_utc(marker.claimed_at)
    if claimed_at is not None and claimed_at < now - timedelta(seconds=lease_seconds):
        taken = session.execute(
            update(ProcessedEventModel)
            .where(
                ProcessedEventModel.source == source,
                ProcessedEventModel.event_id == event_id,
                ProcessedEventModel.status == IN_PROGRESS,
                ProcessedEventModel.attempts == marker.attempts,
            )
            .values(claimed_at=now, attempts=marker.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if taken.rowcount == 1:
            logger.warning("took over stale claim: source=%s event=%s attempts=%s", source, event_id, marker.attempts + 1)
            return ClaimResult(CLAIMED, attempts=marker.attempts + 1)

    return ClaimResult(BUSY, attempts=marker.attempts)


def complete(session: Session, source: str, event_id: str, outcome: dict[str, Any]) -> None:
    session.execute(
        update(ProcessedEventModel)
        .where(ProcessedEventModel.source == source, ProcessedEventModel.event_id == event_id)
        .values(status=COMPLETE, outcome=outcome, completed_at=now_utc())
        .execution_options(synchronize_session=False)
    )


def release(session: Session, source: str, event_id: str) -> None:
    """Drop an in-progress claim so the next delivery re-runs the event."""
    session.execute(
        delete(ProcessedEventModel)
        .where(
            ProcessedEventModel.source == source,
            ProcessedEventModel.event_id == event_id,
            ProcessedEventModel.status == IN_PROGRESS,
        )
        .execution_options(synchronize_session=False)
    )


def get_marker(session: Session, source: str, event_id: str) -> ProcessedEventModel | None:
    return session.get(ProcessedEventModel, (source, event_id), populate_existing=True)
