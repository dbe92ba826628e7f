from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stageflow import audit, events
from stageflow.automation.config_store import PipelineConfigStore, pipeline_config_store
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.errors import (
    ConcurrentTransition,
    InvalidStageForPipeline,
    RecordNotFound,
    RequiredFieldMissing,
    TransitionError,
)
from stageflow.automation.firing_log import FiringLogStore, firing_log_store
from stageflow.automation.models import ActionRequest, PipelineRecord, StageDefinition, utcnow
from stageflow.automation.queue import fire_once
from stageflow.metrics import observe_firing, observe_transition
from stageflow.otel import set_span_attributes


logger = logging.getLogger("stageflow.automation.transitions")
tracer = trace.get_tracer("stageflow.automation.transitions")


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


def missing_required_fields(required_fields: list[str], field_values: dict[str, Any]) -> list[str]:
    return [key for key in required_fields if not _is_present(field_values.get(key))]


def has_duration_automations(snapshot: list[dict[str, Any]]) -> bool:
    return any(item.get("trigger") == "on_duration" for item in snapshot)


@dataclass
class _LockEntry:
    lock: threading.Lock
    holders: int = 0


class RecordLockRegistry:
    """In-process mutual exclusion per record id. Entries are dropped once no caller holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[uuid.UUID, _LockEntry] = {}

    @contextmanager
    def hold(self, record_id: uuid.UUID) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(record_id)
            if entry is None:
                entry = _LockEntry(lock=threading.Lock())
                self._entries[record_id] = entry
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(record_id, None)

    def active_count(self) -> int:
        with self._guard:
            return len(self._entries)


@dataclass(slots=True)
class TransitionResult:
    record: PipelineRecord
    changed: bool
    from_stage_id: uuid.UUID
    to_stage_id: uuid.UUID
    exit_requests: list[ActionRequest] = field(default_factory=list)
    enter_requests: list[ActionRequest] = field(default_factory=list)


@dataclass(slots=True)
class StageTransitionCoordinator:
    config_store: PipelineConfigStore = pipeline_config_store
    firing_log: FiringLogStore = firing_log_store
    locks: RecordLockRegistry = field(default_factory=RecordLockRegistry)
    clock: Callable[[], datetime] = utcnow

    def request_transition(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        record_id: uuid.UUID,
        target_stage_id: uuid.UUID,
        field_values_snapshot: dict[str, Any] | None = None,
    ) -> TransitionResult:
        snapshot = dict(field_values_snapshot or {})
        started = time.perf_counter()

        with tracer.start_as_current_span("automation.transition") as span:
            set_span_attributes(
                span,
                organization_id=ctx.organization_id,
                record_id=record_id,
                to_stage_id=target_stage_id,
                correlation_id=ctx.correlation_id,
            )

            with self.locks.hold(record_id):
                try:
                    result = self._apply(session, ctx, record_id, target_stage_id, snapshot)
                except TransitionError as exc:
                    session.rollback()
                    observe_transition(exc.code)
                    span.set_attribute("outcome", exc.code)
                    logger.info(
                        "transition.rejected",
                        extra={
                            "organization_id": ctx.organization_id,
                            "record_id": str(record_id),
                            "to_stage_id": str(target_stage_id),
                            "status": exc.code,
                            "error": str(exc),
                        },
                    )
                    raise
                except IntegrityError as exc:
                    session.rollback()
                    observe_transition(ConcurrentTransition.code)
                    span.record_exception(exc)
                    raise ConcurrentTransition(record_id) from exc
                except Exception as exc:
                    session.rollback()
                    observe_transition("error")
                    span.record_exception(exc)
                    raise

            outcome = "applied" if result.changed else "unchanged"
            set_span_attributes(span, outcome=outcome, from_stage_id=result.from_stage_id)
            observe_transition(outcome)

        if result.changed:
            observe_firing("on_exit", len({item.automation_id for item in result.exit_requests}))
            observe_firing("on_enter", len({item.automation_id for item in result.enter_requests}))
            self._after_commit(ctx, result)

        logger.info(
            "transition.applied" if result.changed else "transition.unchanged",
            extra={
                "organization_id": ctx.organization_id,
                "record_id": str(record_id),
                "from_stage_id": str(result.from_stage_id),
                "to_stage_id": str(result.to_stage_id),
                "emitted": len(result.exit_requests) + len(result.enter_requests),
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result

    def _apply(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        record_id: uuid.UUID,
        target_stage_id: uuid.UUID,
        snapshot: dict[str, Any],
    ) -> TransitionResult:
        record = session.scalar(select(PipelineRecord).where(PipelineRecord.id == record_id).with_for_update())
        if record is None or record.archived_at is not None or record.organization_id != ctx.organization_id:
            raise RecordNotFound(record_id)
        if ctx.pipeline_id is not None and record.pipeline_id != ctx.pipeline_id:
            raise InvalidStageForPipeline(target_stage_id, ctx.pipeline_id)

        target = session.get(StageDefinition, target_stage_id)
        if target is None or target.pipeline_id != record.pipeline_id:
            raise InvalidStageForPipeline(target_stage_id, record.pipeline_id)

        source_stage_id = record.current_stage_id
        if target.id == source_stage_id:
            session.rollback()
            return TransitionResult(record=record, changed=False, from_stage_id=source_stage_id, to_stage_id=target.id)

        missing = missing_required_fields(list(target.required_fields or []), snapshot)
        if missing:
            raise RequiredFieldMissing(missing)

        now = self.clock()
        source_residency = record.residency_seq

        exit_requests: list[ActionRequest] = []
        for automation in self.config_store.load_snapshot(record.automation_snapshot or []):
            if automation.trigger != "on_exit":
                continue
            emitted = fire_once(
                session,
                ctx,
                record,
                automation,
                epoch=1,
                now=now,
                residency_seq=source_residency,
                firing_log=self.firing_log,
            )
            if emitted:
                exit_requests.extend(emitted)

        target_snapshot = self.config_store.stage_snapshot(target)
        merged_values = {**(record.field_values or {}), **snapshot}
        result = session.execute(
            update(PipelineRecord)
            .where(
                and_(
                    PipelineRecord.id == record.id,
                    PipelineRecord.row_version == record.row_version,
                    PipelineRecord.archived_at.is_(None),
                )
            )
            .values(
                current_stage_id=target.id,
                entered_stage_at=now,
                residency_seq=source_residency + 1,
                field_values=merged_values,
                automation_snapshot=target_snapshot,
                has_duration_automations=has_duration_automations(target_snapshot),
                updated_at=now,
                row_version=PipelineRecord.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentTransition(record.id)
        session.refresh(record)

        enter_requests: list[ActionRequest] = []
        for automation in self.config_store.load_snapshot(target_snapshot):
            if automation.trigger != "on_enter":
                continue
            emitted = fire_once(session, ctx, record, automation, epoch=1, now=now, firing_log=self.firing_log)
            if emitted:
                enter_requests.extend(emitted)

        session.commit()
        return TransitionResult(
            record=record,
            changed=True,
            from_stage_id=source_stage_id,
            to_stage_id=target.id,
            exit_requests=exit_requests,
            enter_requests=enter_requests,
        )

    def _after_commit(self, ctx: OrgPipelineContext, result: TransitionResult) -> None:
        record = result.record
        audit.record(
            actor_user_id=ctx.actor_user_id,
            entity_type="automation.record",
            entity_id=str(record.id),
            action="stage_changed",
            before={"stage_id": str(result.from_stage_id)},
            after={"stage_id": str(result.to_stage_id), "residency_seq": record.residency_seq},
            correlation_id=ctx.correlation_id,
            organization_id=ctx.organization_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "automation.record.stage_changed",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": ctx.actor_user_id,
                "organization_id": ctx.organization_id,
                "correlation_id": ctx.correlation_id,
                "version": 1,
                "payload": {
                    "record_id": str(record.id),
                    "pipeline_id": str(record.pipeline_id),
                    "from_stage_id": str(result.from_stage_id),
                    "to_stage_id": str(result.to_stage_id),
                    "residency_seq": record.residency_seq,
                    "exit_request_ids": [item.request_id for item in result.exit_requests],
                    "enter_request_ids": [item.request_id for item in result.enter_requests],
                },
            }
        )


stage_transition_coordinator = StageTransitionCoordinator()
