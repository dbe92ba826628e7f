from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stageflow.automation.models import FiringLogEntry, utcnow


class FiringLogStore:
    """Idempotency ledger for automation firings.

    One row per (record, residency, automation, epoch). The unique constraint on
    those columns is the check-and-mark primitive: a second writer for the same
    key fails on flush, and its whole transaction, including any action requests
    it queued, is rolled back.
    """

    def fired_epochs(
        self,
        session: Session,
        record_id: uuid.UUID,
        residency_seq: int,
        automation_id: uuid.UUID,
    ) -> set[int]:
        rows = session.scalars(
            select(FiringLogEntry.epoch).where(
                FiringLogEntry.record_id == record_id,
                FiringLogEntry.residency_seq == residency_seq,
                FiringLogEntry.automation_id == automation_id,
            )
        ).all()
        return set(rows)

    def has_fired(
        self,
        session: Session,
        record_id: uuid.UUID,
        residency_seq: int,
        automation_id: uuid.UUID,
        epoch: int,
    ) -> bool:
        found = session.scalar(
            select(FiringLogEntry.id).where(
                FiringLogEntry.record_id == record_id,
                FiringLogEntry.residency_seq == residency_seq,
                FiringLogEntry.automation_id == automation_id,
                FiringLogEntry.epoch == epoch,
            )
        )
        return found is not None

    def mark(
        self,
        session: Session,
        *,
        record_id: uuid.UUID,
        residency_seq: int,
        stage_id: uuid.UUID,
        automation_id: uuid.UUID,
        trigger: str,
        epoch: int,
        fired_at: datetime | None = None,
    ) -> FiringLogEntry:
        if epoch < 1:
            raise ValueError("epoch must be >= 1")
        entry = FiringLogEntry(
            record_id=record_id,
            residency_seq=residency_seq,
            stage_id=stage_id,
            automation_id=automation_id,
            trigger=trigger,
            epoch=epoch,
            fired_at=fired_at or utcnow(),
        )
        session.add(entry)
        session.flush()
        return entry

    def count(
        self,
        session: Session,
        record_id: uuid.UUID,
        automation_id: uuid.UUID | None = None,
        residency_seq: int | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(FiringLogEntry).where(FiringLogEntry.record_id == record_id)
        if automation_id is not None:
            stmt = stmt.where(FiringLogEntry.automation_id == automation_id)
        if residency_seq is not None:
            stmt = stmt.where(FiringLogEntry.residency_seq == residency_seq)
        return int(session.scalar(stmt) or 0)


firing_log_store = FiringLogStore()
