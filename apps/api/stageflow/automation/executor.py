from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.collaborators import Collaborators, CollaboratorsFactory, build_stub_collaborators
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.errors import (
    ActionDeliveryFailed,
    CollaboratorRejected,
    CollaboratorUnavailable,
    DeadLetterNotFound,
)
from stageflow.automation.models import ActionRequest, DeadLetterEntry, PipelineRecord, as_utc, utcnow
from stageflow.automation.schemas import (
    AssignUserAction,
    CreateTaskAction,
    SendEmailAction,
    SendNotificationAction,
    UpdateFieldAction,
    automation_action_adapter,
)
from stageflow.context import reset_correlation_id, set_correlation_id
from stageflow.core.config import get_settings
from stageflow.metrics import observe_action_request, observe_dead_letter
from stageflow.otel import set_span_attributes


logger = logging.getLogger("stageflow.automation.executor")
tracer = trace.get_tracer("stageflow.automation.executor")

TERMINAL_STATUSES = {"succeeded", "skipped", "dead_lettered"}


@dataclass(slots=True)
class DrainSummary:
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    retried: int = 0
    dead_lettered: int = 0

    def add(self, status: str) -> None:
        self.processed += 1
        if status == "succeeded":
            self.succeeded += 1
        elif status == "skipped":
            self.skipped += 1
        elif status == "queued":
            self.retried += 1
        elif status == "dead_lettered":
            self.dead_lettered += 1


def compute_backoff_seconds(attempt: int, base_seconds: int, max_seconds: int) -> int:
    if attempt < 1:
        attempt = 1
    return min(base_seconds * (2 ** (attempt - 1)), max_seconds)


@dataclass(slots=True)
class ActionExecutor:
    collaborators_factory: CollaboratorsFactory = build_stub_collaborators
    clock: Callable[[], datetime] = utcnow
    worker_id: str | None = None

    def _worker(self) -> str:
        return self.worker_id or get_settings().worker_id

    def backoff_seconds(self, attempt: int) -> int:
        settings = get_settings()
        return compute_backoff_seconds(attempt, settings.action_retry_base_seconds, settings.action_retry_max_seconds)

    def claim_batch(self, session: Session, limit: int | None = None) -> list[str]:
        settings = get_settings()
        now = self.clock()
        batch_size = limit or settings.executor_batch_size
        stale_cutoff = now - timedelta(seconds=settings.action_lock_timeout_seconds)
        claimable = or_(
            and_(ActionRequest.status == "queued", ActionRequest.run_after <= now),
            and_(ActionRequest.status == "running", ActionRequest.locked_at < stale_cutoff),
        )
        candidates = session.execute(
            select(ActionRequest.request_id, ActionRequest.status, ActionRequest.locked_at)
            .where(claimable)
            .order_by(ActionRequest.id.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).all()

        claimed: list[str] = []
        worker = self._worker()
        for request_id, status_value, locked_at in candidates:
            condition = [ActionRequest.request_id == request_id, ActionRequest.status == status_value]
            if status_value == "running":
                condition.append(ActionRequest.locked_at == locked_at)
                logger.warning(
                    "action.lock_reclaimed",
                    extra={"request_id": request_id, "worker_id": worker},
                )
            result = session.execute(
                update(ActionRequest)
                .where(and_(*condition))
                .values(
                    status="running",
                    locked_by=worker,
                    locked_at=now,
                    attempts=ActionRequest.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(request_id)
        session.commit()
        return claimed

    def drain(self, session: Session, limit: int | None = None) -> DrainSummary:
        summary = DrainSummary()
        for request_id in self.claim_batch(session, limit):
            summary.add(self._execute_claimed(session, request_id))
        if summary.processed:
            logger.info(
                "executor.drained",
                extra={"status": "drained", "emitted": summary.processed, "worker_id": self._worker()},
            )
        return summary

    def process_request(self, session: Session, request_id: str) -> str:
        request = self._load_request(session, request_id)
        if request is None:
            return "missing"
        if request.status in TERMINAL_STATUSES:
            return request.status

        now = self.clock()
        result = session.execute(
            update(ActionRequest)
            .where(ActionRequest.request_id == request_id, ActionRequest.status == "queued")
            .values(
                status="running",
                locked_by=self._worker(),
                locked_at=now,
                attempts=ActionRequest.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount != 1:
            current = self._load_request(session, request_id)
            return current.status if current is not None else "missing"
        return self._execute_claimed(session, request_id)

    def _load_request(self, session: Session, request_id: str) -> ActionRequest | None:
        return session.scalar(
            select(ActionRequest)
            .where(ActionRequest.request_id == request_id)
            .execution_options(populate_existing=True)
        )

    def _load_record(self, session: Session, request: ActionRequest) -> PipelineRecord | None:
        return session.scalar(
            select(PipelineRecord)
            .where(PipelineRecord.id == request.record_id)
            .execution_options(populate_existing=True)
        )

    @staticmethod
    def _residency_guard(request: ActionRequest) -> tuple[uuid.UUID | None, int | None]:
        if request.trigger in {"on_enter", "on_duration"}:
            return request.stage_id, request.residency_seq
        return None, None

    def _precondition_failure(self, request: ActionRequest, record: PipelineRecord | None) -> str | None:
        if record is None or record.organization_id != request.organization_id:
            return "record_deleted"
        if record.archived_at is not None:
            return "record_archived"
        if request.trigger in {"on_enter", "on_duration"}:
            if record.current_stage_id != request.stage_id or record.residency_seq != request.residency_seq:
                return "record_left_stage"
        return None

    def _execute_claimed(self, session: Session, request_id: str) -> str:
        request = self._load_request(session, request_id)
        if request is None:
            return "missing"

        token = set_correlation_id(request.correlation_id)
        started = time.perf_counter()
        action_type = request.action_type
        final_status = "queued"
        try:
            with tracer.start_as_current_span("automation.action") as span:
                set_span_attributes(
                    span,
                    request_id=request.request_id,
                    action_type=action_type,
                    record_id=request.record_id,
                    trigger=request.trigger,
                    epoch=request.epoch,
                    attempts=request.attempts,
                    correlation_id=request.correlation_id,
                )

                record = self._load_record(session, request)
                skip_reason = self._precondition_failure(request, record)
                if skip_reason is None:
                    try:
                        skip_reason = self._dispatch(request, record, self.collaborators_factory(session))
                    except ActionDeliveryFailed as exc:
                        session.rollback()
                        span.record_exception(exc)
                        final_status = self._handle_failure(session, exc)
                        span.set_status(Status(StatusCode.ERROR, exc.reason))
                        span.set_attribute("status", final_status)
                        return final_status

                final_status = self._complete(session, request_id, skip_reason)
                span.set_attribute("status", final_status)
                return final_status
        finally:
            observe_action_request(action_type, final_status, time.perf_counter() - started)
            reset_correlation_id(token)

    def _complete(self, session: Session, request_id: str, skip_reason: str | None) -> str:
        request = self._load_request(session, request_id)
        if request is None:
            return "missing"
        now = self.clock()
        request.status = "skipped" if skip_reason else "succeeded"
        request.last_error = skip_reason
        request.completed_at = now
        request.locked_by = None
        request.locked_at = None
        session.commit()

        logger.info(
            "action.skipped" if skip_reason else "action.succeeded",
            extra={
                "request_id": request.request_id,
                "record_id": str(request.record_id),
                "stage_id": str(request.stage_id),
                "automation_id": str(request.automation_id),
                "trigger": request.trigger,
                "epoch": request.epoch,
                "action_type": request.action_type,
                "status": request.status,
                "attempts": request.attempts,
                "error": skip_reason,
            },
        )
        return request.status

    def _dispatch(self, request: ActionRequest, record: PipelineRecord, collaborators: Collaborators) -> str | None:
        try:
            action = automation_action_adapter.validate_python({"type": request.action_type, "config": request.config})
        except ValidationError as exc:
            raise ActionDeliveryFailed(request.request_id, f"invalid action config: {exc.errors()[0]['msg']}", permanent=True) from exc

        try:
            if isinstance(action, CreateTaskAction):
                return self._apply_create_task(request, record, action, collaborators)
            if isinstance(action, SendNotificationAction):
                return self._apply_send_notification(request, record, action, collaborators)
            if isinstance(action, AssignUserAction):
                return self._apply_assign_user(request, record, action, collaborators)
            if isinstance(action, UpdateFieldAction):
                return self._apply_update_field(request, record, action, collaborators)
            if isinstance(action, SendEmailAction):
                return self._apply_send_email(request, record, action, collaborators)
        except CollaboratorRejected as exc:
            raise ActionDeliveryFailed(request.request_id, str(exc), permanent=True) from exc
        except CollaboratorUnavailable as exc:
            raise ActionDeliveryFailed(request.request_id, str(exc) or "collaborator unavailable") from exc
        except Exception as exc:
            logger.exception(
                "action.collaborator_error",
                extra={"request_id": request.request_id, "action_type": request.action_type, "error": str(exc)},
            )
            raise ActionDeliveryFailed(request.request_id, f"{type(exc).__name__}: {exc}") from exc
        raise ActionDeliveryFailed(request.request_id, f"unsupported action type {request.action_type}", permanent=True)

    def _apply_create_task(
        self,
        request: ActionRequest,
        record: PipelineRecord,
        action: CreateTaskAction,
        collaborators: Collaborators,
    ) -> str | None:
        config = action.config
        if config.assignee_strategy == "explicit":
            assignee = config.assignee_user_id
        elif config.assignee_strategy == "by_specialization":
            specialization = config.specialization or (record.field_values or {}).get("specialization")
            assignee = (
                collaborators.directory.pick_assignee(
                    request.organization_id,
                    None,
                    "by_specialization",
                    specialization if isinstance(specialization, str) else None,
                )
                or record.owner_id
            )
        else:
            assignee = record.owner_id

        collaborators.tasks.create_task(
            request_id=request.request_id,
            organization_id=request.organization_id,
            record_id=record.id,
            title=config.title,
            description=config.description,
            priority=config.priority,
            due_at=as_utc(request.triggered_at) + timedelta(hours=config.due_in_hours),
            assignee_user_id=assignee,
            recurring=config.recurring,
        )
        return None

    def _apply_send_notification(
        self,
        request: ActionRequest,
        record: PipelineRecord,
        action: SendNotificationAction,
        collaborators: Collaborators,
    ) -> str | None:
        config = action.config
        if config.audience == "owner":
            recipients = [record.owner_id] if record.owner_id else []
        else:
            recipients = list(config.user_ids)
        if not recipients:
            return "no_recipient"
        collaborators.notifications.send(
            request_id=request.request_id,
            organization_id=request.organization_id,
            record_id=record.id,
            recipient_user_ids=recipients,
            title=config.title,
            message=config.message,
            kind=config.kind,
        )
        return None

    def _apply_assign_user(
        self,
        request: ActionRequest,
        record: PipelineRecord,
        action: AssignUserAction,
        collaborators: Collaborators,
    ) -> str | None:
        config = action.config
        specialization = config.specialization or (record.field_values or {}).get("specialization")
        assignee = collaborators.directory.pick_assignee(
            request.organization_id,
            config.role,
            config.strategy,
            specialization if isinstance(specialization, str) else None,
        )
        if assignee is None:
            return "no_candidate"
        return collaborators.records.set_owner(record.id, assignee, *self._residency_guard(request))

    def _apply_update_field(
        self,
        request: ActionRequest,
        record: PipelineRecord,
        action: UpdateFieldAction,
        collaborators: Collaborators,
    ) -> str | None:
        config = action.config
        return collaborators.records.update_field(
            record.id,
            config.field,
            config.value,
            config.operation or "set",
            *self._residency_guard(request),
        )

    def _apply_send_email(
        self,
        request: ActionRequest,
        record: PipelineRecord,
        action: SendEmailAction,
        collaborators: Collaborators,
    ) -> str | None:
        config = action.config
        if config.to == "owner":
            if not record.owner_id:
                return "no_recipient"
            to_address = collaborators.directory.email_for(request.organization_id, record.owner_id)
            if not to_address:
                return "no_recipient_email"
        else:
            to_address = str(config.to)
        collaborators.emails.send(
            request_id=request.request_id,
            organization_id=request.organization_id,
            record_id=record.id,
            to_address=to_address,
            template=config.template,
            subject=config.subject,
        )
        return None

    def _handle_failure(self, session: Session, failure: ActionDeliveryFailed) -> str:
        request = self._load_request(session, failure.request_id)
        if request is None:
            return "missing"
        settings = get_settings()
        now = self.clock()
        request.last_error = failure.reason[:2000]
        request.locked_by = None
        request.locked_at = None

        if failure.permanent or request.attempts >= settings.action_max_attempts:
            request.status = "dead_lettered"
            request.completed_at = now
            entry = session.scalar(select(DeadLetterEntry).where(DeadLetterEntry.request_id == request.request_id))
            payload = {
                "request_id": request.request_id,
                "record_id": str(request.record_id),
                "stage_id": str(request.stage_id),
                "automation_id": str(request.automation_id),
                "trigger": request.trigger,
                "epoch": request.epoch,
                "action_type": request.action_type,
                "config": request.config,
                "triggered_at": as_utc(request.triggered_at).isoformat(),
            }
            if entry is None:
                entry = DeadLetterEntry(
                    request_id=request.request_id,
                    organization_id=request.organization_id,
                    action_type=request.action_type,
                    first_failed_at=now,
                )
                session.add(entry)
            entry.reason = failure.reason[:2000]
            entry.payload = payload
            entry.attempts = request.attempts
            entry.last_failed_at = now
            entry.requeued_at = None
            session.commit()

            observe_dead_letter(request.action_type)
            audit.record(
                actor_user_id="system",
                entity_type="automation.action_request",
                entity_id=request.request_id,
                action="dead_lettered",
                before=None,
                after={"reason": entry.reason, "attempts": entry.attempts},
                correlation_id=request.correlation_id,
                organization_id=request.organization_id,
            )
            logger.warning(
                "action.dead_lettered",
                extra={
                    "request_id": request.request_id,
                    "record_id": str(request.record_id),
                    "action_type": request.action_type,
                    "status": "dead_lettered",
                    "attempts": request.attempts,
                    "error": failure.reason,
                },
            )
            return "dead_lettered"

        delay = self.backoff_seconds(request.attempts)
        request.status = "queued"
        request.run_after = now + timedelta(seconds=delay)
        session.commit()
        logger.warning(
            "action.retry_scheduled",
            extra={
                "request_id": request.request_id,
                "record_id": str(request.record_id),
                "action_type": request.action_type,
                "status": "queued",
                "attempts": request.attempts,
                "run_after": request.run_after.isoformat(),
                "error": failure.reason,
            },
        )
        return "queued"

    def list_dead_letters(self, session: Session, ctx: OrgPipelineContext, include_requeued: bool = False) -> list[DeadLetterEntry]:
        stmt = select(DeadLetterEntry).where(DeadLetterEntry.organization_id == ctx.organization_id)
        if not include_requeued:
            stmt = stmt.where(DeadLetterEntry.requeued_at.is_(None))
        return list(session.scalars(stmt.order_by(DeadLetterEntry.last_failed_at.desc())).all())

    def requeue_dead_letter(self, session: Session, ctx: OrgPipelineContext, request_id: str) -> ActionRequest:
        entry = session.scalar(
            select(DeadLetterEntry).where(
                DeadLetterEntry.request_id == request_id,
                DeadLetterEntry.organization_id == ctx.organization_id,
            )
        )
        request = self._load_request(session, request_id)
        if entry is None or request is None or request.status != "dead_lettered":
            raise DeadLetterNotFound(request_id)

        now = self.clock()
        request.status = "queued"
        request.attempts = 0
        request.run_after = now
        request.completed_at = None
        request.locked_by = None
        request.locked_at = None
        entry.requeued_at = now
        session.commit()

        audit.record(
            actor_user_id=ctx.actor_user_id,
            entity_type="automation.action_request",
            entity_id=request_id,
            action="requeue",
            before={"status": "dead_lettered"},
            after={"status": "queued"},
            correlation_id=ctx.correlation_id,
            organization_id=ctx.organization_id,
        )
        logger.info("action.requeued", extra={"request_id": request_id, "status": "queued"})
        return request


action_executor = ActionExecutor()
