from __future__ import annotations

import hashlib
import uuid
from datetime import datetime

from sqlalchemy.orm import Session

from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.firing_log import FiringLogStore, firing_log_store
from stageflow.automation.models import ActionRequest, PipelineRecord
from stageflow.automation.schemas import AutomationSnapshot, dump_action
from stageflow.context import get_correlation_id


def build_request_id(
    record_id: uuid.UUID,
    residency_seq: int,
    stage_id: uuid.UUID,
    automation_id: uuid.UUID,
    epoch: int,
    action_index: int,
) -> str:
    raw = f"{record_id}|{residency_seq}|{stage_id}|{automation_id}|{epoch}|{action_index}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def enqueue_actions(
    session: Session,
    ctx: OrgPipelineContext,
    record: PipelineRecord,
    automation: AutomationSnapshot,
    epoch: int,
    triggered_at: datetime,
    residency_seq: int | None = None,
) -> list[ActionRequest]:
    residency = record.residency_seq if residency_seq is None else residency_seq
    correlation_id = ctx.correlation_id or get_correlation_id()
    requests: list[ActionRequest] = []
    for index, action in enumerate(automation.actions):
        requests.append(
            ActionRequest(
                request_id=build_request_id(record.id, residency, automation.stage_id, automation.id, epoch, index),
                organization_id=record.organization_id,
                record_id=record.id,
                stage_id=automation.stage_id,
                automation_id=automation.id,
                trigger=automation.trigger,
                residency_seq=residency,
                epoch=epoch,
                action_index=index,
                action_type=action.type,
                config=dump_action(action)["config"],
                triggered_at=triggered_at,
                status="queued",
                attempts=0,
                run_after=triggered_at,
                correlation_id=correlation_id,
            )
        )
    # one flush per request keeps queue ids in action order
    for request in requests:
        session.add(request)
        session.flush()
    return requests


def fire_once(
    session: Session,
    ctx: OrgPipelineContext,
    record: PipelineRecord,
    automation: AutomationSnapshot,
    epoch: int,
    now: datetime,
    residency_seq: int | None = None,
    firing_log: FiringLogStore = firing_log_store,
) -> list[ActionRequest] | None:
    """Check-and-mark one (record, residency, automation, epoch) and queue its actions.

    Returns None when the firing log already holds the key. Nothing is committed
    here; the caller owns the transaction, so a failed flush or commit leaves
    neither the mark nor the requests behind.
    """
    residency = record.residency_seq if residency_seq is None else residency_seq
    if firing_log.has_fired(session, record.id, residency, automation.id, epoch):
        return None
    firing_log.mark(
        session,
        record_id=record.id,
        residency_seq=residency,
        stage_id=automation.stage_id,
        automation_id=automation.id,
        trigger=automation.trigger,
        epoch=epoch,
        fired_at=now,
    )
    return enqueue_actions(session, ctx, record, automation, epoch, now, residency_seq=residency)
