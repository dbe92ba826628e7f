from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from opentelemetry import trace
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stageflow.automation.config_store import PipelineConfigStore, pipeline_config_store
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.errors import ScanTickFailed
from stageflow.automation.firing_log import FiringLogStore, firing_log_store
from stageflow.automation.models import PipelineRecord, SchedulerLease, as_utc, utcnow
from stageflow.automation.queue import fire_once
from stageflow.automation.schemas import AutomationSnapshot
from stageflow.core.config import get_settings
from stageflow.metrics import observe_firing, observe_scan, observe_scan_failure
from stageflow.otel import set_span_attributes


logger = logging.getLogger("stageflow.automation.scheduler")
tracer = trace.get_tracer("stageflow.automation.scheduler")


def due_epochs(
    elapsed: timedelta,
    duration_minutes: int | None,
    recurring: bool,
    fired: set[int],
    limit: int,
) -> list[int]:
    """Epochs that are due and not yet fired, oldest first.

    An epoch is the count of full ``duration_minutes`` intervals since stage
    entry; epoch 0 is never due. Non-recurring automations only ever fire
    epoch 1.
    """
    if not duration_minutes or duration_minutes <= 0 or elapsed <= timedelta(0):
        return []
    current_epoch = elapsed // timedelta(minutes=duration_minutes)
    if current_epoch < 1:
        return []
    if not recurring:
        return [] if 1 in fired else [1]

    due: list[int] = []
    for epoch in range(1, current_epoch + 1):
        if epoch in fired:
            continue
        due.append(epoch)
        if len(due) >= limit:
            break
    return due


@dataclass(slots=True)
class DueFiring:
    record_id: uuid.UUID
    organization_id: str
    stage_id: uuid.UUID
    residency_seq: int
    automation: AutomationSnapshot
    epoch: int


@dataclass(slots=True)
class ScanPartition:
    index: int = 0
    count: int = 1

    @property
    def label(self) -> str:
        return f"{self.index}/{self.count}"


@dataclass(slots=True)
class DurationScanScheduler:
    config_store: PipelineConfigStore = pipeline_config_store
    firing_log: FiringLogStore = firing_log_store
    clock: Callable[[], datetime] = utcnow
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def holder(self) -> str:
        return f"{get_settings().worker_id}/{self.instance_id}"

    def default_partition(self) -> ScanPartition:
        settings = get_settings()
        return ScanPartition(index=settings.scan_partition_index, count=max(settings.scan_partition_count, 1))

    def acquire_lease(self, session: Session, name: str, now: datetime | None = None) -> bool:
        now = now or self.clock()
        holder = self.holder()
        expires_at = now + timedelta(seconds=get_settings().scan_lease_seconds)
        result = session.execute(
            update(SchedulerLease)
            .where(
                SchedulerLease.name == name,
                or_(SchedulerLease.holder == holder, SchedulerLease.expires_at <= now),
            )
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.commit()
            return True
        if session.get(SchedulerLease, name) is not None:
            session.rollback()
            return False

        session.add(SchedulerLease(name=name, holder=holder, acquired_at=now, expires_at=expires_at))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True

    def release_lease(self, session: Session, name: str, now: datetime | None = None) -> None:
        session.execute(
            update(SchedulerLease)
            .where(SchedulerLease.name == name, SchedulerLease.holder == self.holder())
            .values(expires_at=now or self.clock())
            .execution_options(synchronize_session=False)
        )
        session.commit()

    def _candidate_batches(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        partition: ScanPartition,
    ) -> Iterator[list]:
        batch_size = get_settings().scan_batch_size
        after_id: uuid.UUID | None = None
        while True:
            stmt = select(
                PipelineRecord.id,
                PipelineRecord.organization_id,
                PipelineRecord.current_stage_id,
                PipelineRecord.residency_seq,
                PipelineRecord.entered_stage_at,
                PipelineRecord.automation_snapshot,
            ).where(
                PipelineRecord.organization_id == ctx.organization_id,
                PipelineRecord.has_duration_automations.is_(True),
                PipelineRecord.archived_at.is_(None),
            )
            if ctx.pipeline_id is not None:
                stmt = stmt.where(PipelineRecord.pipeline_id == ctx.pipeline_id)
            if partition.count > 1:
                stmt = stmt.where(PipelineRecord.partition_key % partition.count == partition.index)
            if after_id is not None:
                stmt = stmt.where(PipelineRecord.id > after_id)
            stmt = stmt.order_by(PipelineRecord.id.asc()).limit(batch_size)

            try:
                rows = session.execute(stmt).all()
            except SQLAlchemyError as exc:
                session.rollback()
                raise ScanTickFailed(str(exc)) from exc
            if not rows:
                return
            yield rows
            if len(rows) < batch_size:
                return
            after_id = rows[-1].id

    def plan_due_firings(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        now: datetime | None = None,
        partition: ScanPartition | None = None,
    ) -> Iterator[DueFiring]:
        now = now or self.clock()
        partition = partition or self.default_partition()
        limit = max(get_settings().scan_max_epochs_per_automation, 1)

        for rows in self._candidate_batches(session, ctx, partition):
            for row in rows:
                elapsed = now - as_utc(row.entered_stage_at)
                for automation in self.config_store.load_snapshot(row.automation_snapshot or []):
                    if automation.trigger != "on_duration":
                        continue
                    try:
                        fired = self.firing_log.fired_epochs(session, row.id, row.residency_seq, automation.id)
                    except SQLAlchemyError as exc:
                        session.rollback()
                        raise ScanTickFailed(str(exc)) from exc
                    for epoch in due_epochs(elapsed, automation.duration_minutes, automation.recurring, fired, limit):
                        yield DueFiring(
                            record_id=row.id,
                            organization_id=row.organization_id,
                            stage_id=row.current_stage_id,
                            residency_seq=row.residency_seq,
                            automation=automation,
                            epoch=epoch,
                        )

    def emit_firing(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        due: DueFiring,
        now: datetime | None = None,
    ) -> int:
        """Check-and-mark one due epoch in its own transaction. Returns the number of requests queued."""
        now = now or self.clock()
        record = session.scalar(
            select(PipelineRecord)
            .where(PipelineRecord.id == due.record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if (
            record is None
            or record.archived_at is not None
            or record.current_stage_id != due.stage_id
            or record.residency_seq != due.residency_seq
        ):
            session.rollback()
            return 0

        try:
            emitted = fire_once(
                session,
                ctx,
                record,
                due.automation,
                epoch=due.epoch,
                now=now,
                residency_seq=due.residency_seq,
                firing_log=self.firing_log,
            )
            if emitted is None:
                session.rollback()
                return 0
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(
                "scan.firing_lost",
                extra={
                    "record_id": str(due.record_id),
                    "automation_id": str(due.automation.id),
                    "epoch": due.epoch,
                },
            )
            return 0
        except SQLAlchemyError:
            session.rollback()
            raise

        observe_firing("on_duration")
        logger.info(
            "scan.firing_emitted",
            extra={
                "organization_id": due.organization_id,
                "record_id": str(due.record_id),
                "stage_id": str(due.stage_id),
                "automation_id": str(due.automation.id),
                "trigger": "on_duration",
                "epoch": due.epoch,
                "emitted": len(emitted),
            },
        )
        return len(emitted)

    def _scan(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        now: datetime,
        partition: ScanPartition,
    ) -> int:
        emitted = 0
        for due in self.plan_due_firings(session, ctx, now=now, partition=partition):
            try:
                emitted += self.emit_firing(session, ctx, due, now=now)
            except SQLAlchemyError as exc:
                # epoch stays unmarked and is retried on the next tick
                logger.warning(
                    "scan.firing_failed",
                    extra={
                        "record_id": str(due.record_id),
                        "automation_id": str(due.automation.id),
                        "epoch": due.epoch,
                        "error": str(exc),
                    },
                )
        return emitted

    def scan_once(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        now: datetime | None = None,
        partition: ScanPartition | None = None,
    ) -> int:
        now = now or self.clock()
        partition = partition or self.default_partition()
        lease_name = f"duration-scan:{ctx.organization_id}:{partition.label}"
        started = time.perf_counter()

        with tracer.start_as_current_span("automation.scan") as span:
            set_span_attributes(span, organization_id=ctx.organization_id, partition=partition.label, lease=lease_name)
            try:
                acquired = self.acquire_lease(session, lease_name, now)
            except SQLAlchemyError as exc:
                session.rollback()
                observe_scan_failure()
                logger.error(
                    "scan.tick_failed",
                    extra={"organization_id": ctx.organization_id, "partition": partition.label, "error": str(exc)},
                )
                raise ScanTickFailed(str(exc)) from exc
            if not acquired:
                span.set_attribute("outcome", "lease_busy")
                logger.info(
                    "scan.lease_busy",
                    extra={"organization_id": ctx.organization_id, "partition": partition.label},
                )
                return 0
            try:
                emitted = self._scan(session, ctx, now, partition)
            except ScanTickFailed as exc:
                span.record_exception(exc)
                observe_scan_failure()
                logger.error(
                    "scan.tick_failed",
                    extra={"organization_id": ctx.organization_id, "partition": partition.label, "error": exc.reason},
                )
                raise
            finally:
                self.release_lease(session, lease_name, now)
            span.set_attribute("emitted", emitted)

        observe_scan(emitted, time.perf_counter() - started)
        logger.info(
            "scan.finished",
            extra={
                "organization_id": ctx.organization_id,
                "partition": partition.label,
                "emitted": emitted,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "worker_id": self.holder(),
            },
        )
        return emitted

    def scan_all(
        self,
        session: Session,
        now: datetime | None = None,
        partition: ScanPartition | None = None,
    ) -> int:
        now = now or self.clock()
        partition = partition or self.default_partition()
        try:
            organizations = list(
                session.scalars(
                    select(PipelineRecord.organization_id)
                    .where(
                        PipelineRecord.has_duration_automations.is_(True),
                        PipelineRecord.archived_at.is_(None),
                    )
                    .distinct()
                    .order_by(PipelineRecord.organization_id)
                ).all()
            )
        except SQLAlchemyError as exc:
            session.rollback()
            observe_scan_failure()
            logger.error("scan.tick_failed", extra={"partition": partition.label, "error": str(exc)})
            raise ScanTickFailed(str(exc)) from exc
        session.rollback()

        total = 0
        for organization_id in organizations:
            ctx = OrgPipelineContext(organization_id=organization_id)
            total += self.scan_once(session, ctx, now=now, partition=partition)
        return total


duration_scan_scheduler = DurationScanScheduler()
