from __future__ import annotations

import logging
import uuid
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from stageflow import audit, events
from stageflow.automation.config_store import PipelineConfigStore, pipeline_config_store
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.coordinator import has_duration_automations
from stageflow.automation.errors import RecordNotFound
from stageflow.automation.firing_log import FiringLogStore, firing_log_store
from stageflow.automation.models import ActionRequest, PipelineRecord, utcnow
from stageflow.automation.queue import fire_once
from stageflow.metrics import observe_firing
from stageflow.otel import set_span_attributes


logger = logging.getLogger("stageflow.automation.records")
tracer = trace.get_tracer("stageflow.automation.records")


def partition_key_for(record_id: uuid.UUID) -> int:
    return zlib.crc32(record_id.bytes) & 0x7FFFFFFF


@dataclass(slots=True)
class RecordCreated:
    record: PipelineRecord
    created: bool
    enter_requests: list[ActionRequest] = field(default_factory=list)


@dataclass(slots=True)
class RecordRegistry:
    config_store: PipelineConfigStore = pipeline_config_store
    firing_log: FiringLogStore = firing_log_store
    clock: Callable[[], datetime] = utcnow

    def create_record(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        pipeline_id: uuid.UUID,
        owner_id: str | None = None,
        field_values: dict[str, Any] | None = None,
        record_id: uuid.UUID | None = None,
    ) -> RecordCreated:
        if record_id is not None:
            existing = session.get(PipelineRecord, record_id)
            if existing is not None:
                if existing.organization_id != ctx.organization_id:
                    raise RecordNotFound(record_id)
                return RecordCreated(record=existing, created=False)

        pipeline = self.config_store.get_pipeline(session, ctx, pipeline_id)
        stage = self.config_store.default_stage(session, pipeline.id)
        snapshot = self.config_store.stage_snapshot(stage)
        now = self.clock()
        resolved_id = record_id or uuid.uuid4()

        with tracer.start_as_current_span("automation.record.create") as span:
            set_span_attributes(span, record_id=resolved_id, pipeline_id=pipeline.id, stage_id=stage.id)

            record = PipelineRecord(
                id=resolved_id,
                organization_id=ctx.organization_id,
                pipeline_id=pipeline.id,
                current_stage_id=stage.id,
                entered_stage_at=now,
                residency_seq=1,
                owner_id=owner_id,
                field_values=dict(field_values or {}),
                automation_snapshot=snapshot,
                has_duration_automations=has_duration_automations(snapshot),
                partition_key=partition_key_for(resolved_id),
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.flush()

            enter_requests: list[ActionRequest] = []
            for automation in self.config_store.load_snapshot(snapshot):
                if automation.trigger != "on_enter":
                    continue
                emitted = fire_once(session, ctx, record, automation, epoch=1, now=now, firing_log=self.firing_log)
                if emitted:
                    enter_requests.extend(emitted)
            session.commit()
            session.refresh(record)

        observe_firing("on_enter", len({item.automation_id for item in enter_requests}))
        audit.record(
            actor_user_id=ctx.actor_user_id,
            entity_type="automation.record",
            entity_id=str(record.id),
            action="create",
            before=None,
            after={"pipeline_id": str(record.pipeline_id), "stage_id": str(record.current_stage_id)},
            correlation_id=ctx.correlation_id,
            organization_id=ctx.organization_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "automation.record.created",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": ctx.actor_user_id,
                "organization_id": ctx.organization_id,
                "correlation_id": ctx.correlation_id,
                "version": 1,
                "payload": {
                    "record_id": str(record.id),
                    "pipeline_id": str(record.pipeline_id),
                    "stage_id": str(record.current_stage_id),
                },
            }
        )
        logger.info(
            "record.created",
            extra={
                "organization_id": ctx.organization_id,
                "record_id": str(record.id),
                "stage_id": str(record.current_stage_id),
                "emitted": len(enter_requests),
            },
        )
        return RecordCreated(record=record, created=True, enter_requests=enter_requests)

    def get_record(self, session: Session, ctx: OrgPipelineContext, record_id: uuid.UUID) -> PipelineRecord:
        record = session.get(PipelineRecord, record_id)
        if record is None or record.organization_id != ctx.organization_id:
            raise RecordNotFound(record_id)
        return record

    def retire_record(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        record_id: uuid.UUID,
        hard: bool = False,
    ) -> None:
        record = self.get_record(session, ctx, record_id)
        before = {"stage_id": str(record.current_stage_id), "archived_at": None}
        if hard:
            session.delete(record)
        elif record.archived_at is None:
            now = self.clock()
            record.archived_at = now
            record.updated_at = now
        else:
            return
        session.commit()

        audit.record(
            actor_user_id=ctx.actor_user_id,
            entity_type="automation.record",
            entity_id=str(record_id),
            action="delete" if hard else "archive",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
            organization_id=ctx.organization_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "automation.record.retired",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": ctx.actor_user_id,
                "organization_id": ctx.organization_id,
                "correlation_id": ctx.correlation_id,
                "version": 1,
                "payload": {"record_id": str(record_id), "hard": hard},
            }
        )
        logger.info(
            "record.retired",
            extra={"organization_id": ctx.organization_id, "record_id": str(record_id), "status": "deleted" if hard else "archived"},
        )

    def list_action_requests(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        record_id: uuid.UUID,
    ) -> list[ActionRequest]:
        return list(
            session.scalars(
                select(ActionRequest)
                .where(
                    ActionRequest.record_id == record_id,
                    ActionRequest.organization_id == ctx.organization_id,
                )
                .order_by(ActionRequest.id.asc())
            ).all()
        )


record_registry = RecordRegistry()
