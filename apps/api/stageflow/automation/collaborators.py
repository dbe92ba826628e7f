from __future__ import annotations

import itertools
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stageflow.automation.errors import CollaboratorUnavailable
from stageflow.automation.models import (
    DispatchedEmail,
    DispatchedNotification,
    DispatchedTask,
    PipelineRecord,
    utcnow,
)
from stageflow.context import get_correlation_id
from stageflow.otel import set_span_attributes


tracer = trace.get_tracer("stageflow.automation.collaborators")


class TaskClient(Protocol):
    def create_task(
        self,
        request_id: str,
        organization_id: str,
        record_id: uuid.UUID,
        title: str,
        description: str | None,
        priority: str,
        due_at: datetime,
        assignee_user_id: str | None,
        recurring: bool,
    ) -> uuid.UUID: ...


class NotificationClient(Protocol):
    def send(
        self,
        request_id: str,
        organization_id: str,
        record_id: uuid.UUID,
        recipient_user_ids: list[str],
        title: str,
        message: str,
        kind: str,
    ) -> uuid.UUID: ...


class EmailClient(Protocol):
    def send(
        self,
        request_id: str,
        organization_id: str,
        record_id: uuid.UUID,
        to_address: str,
        template: str,
        subject: str | None,
    ) -> uuid.UUID: ...


class RecordClient(Protocol):
    def set_owner(
        self,
        record_id: uuid.UUID,
        owner_id: str,
        expected_stage_id: uuid.UUID | None = None,
        expected_residency: int | None = None,
    ) -> str | None: ...

    def update_field(
        self,
        record_id: uuid.UUID,
        field_key: str,
        value: Any,
        operation: str,
        expected_stage_id: uuid.UUID | None = None,
        expected_residency: int | None = None,
    ) -> str | None: ...


class UserDirectory(Protocol):
    def pick_assignee(
        self,
        organization_id: str,
        role: str | None,
        strategy: str,
        specialization: str | None = None,
    ) -> str | None: ...

    def email_for(self, organization_id: str, user_id: str) -> str | None: ...


class StubTaskClient:
    def __init__(self, session: Session):
        self.session = session

    def create_task(
        self,
        request_id: str,
        organization_id: str,
        record_id: uuid.UUID,
        title: str,
        description: str | None,
        priority: str,
        due_at: datetime,
        assignee_user_id: str | None,
        recurring: bool,
    ) -> uuid.UUID:
        with tracer.start_as_current_span("collaborator.task.create") as span:
            set_span_attributes(span, request_id=request_id, record_id=record_id, correlation_id=get_correlation_id())
            existing = self.session.scalar(select(DispatchedTask).where(DispatchedTask.request_id == request_id))
            if existing is not None:
                return existing.id
            task = DispatchedTask(
                request_id=request_id,
                organization_id=organization_id,
                record_id=record_id,
                title=title,
                description=description,
                priority=priority,
                due_at=due_at,
                assignee_user_id=assignee_user_id,
                recurring=recurring,
            )
            self.session.add(task)
            self.session.flush()
            span.set_attribute("task_id", str(task.id))
            return task.id


class StubNotificationClient:
    def __init__(self, session: Session):
        self.session = session

    def send(
        self,
        request_id: str,
        organization_id: str,
        record_id: uuid.UUID,
        recipient_user_ids: list[str],
        title: str,
        message: str,
        kind: str,
    ) -> uuid.UUID:
        with tracer.start_as_current_span("collaborator.notification.send") as span:
            span.set_attribute("request_id", request_id)
            span.set_attribute("recipients", len(recipient_user_ids))
            existing = self.session.scalar(
                select(DispatchedNotification).where(DispatchedNotification.request_id == request_id)
            )
            if existing is not None:
                return existing.id
            notification = DispatchedNotification(
                request_id=request_id,
                organization_id=organization_id,
                record_id=record_id,
                recipient_user_ids=list(recipient_user_ids),
                title=title,
                message=message,
                kind=kind,
            )
            self.session.add(notification)
            self.session.flush()
            return notification.id


class StubEmailClient:
    def __init__(self, session: Session):
        self.session = session

    def send(
        self,
        request_id: str,
        organization_id: str,
        record_id: uuid.UUID,
        to_address: str,
        template: str,
        subject: str | None,
    ) -> uuid.UUID:
        with tracer.start_as_current_span("collaborator.email.send") as span:
            span.set_attribute("request_id", request_id)
            span.set_attribute("template", template)
            existing = self.session.scalar(select(DispatchedEmail).where(DispatchedEmail.request_id == request_id))
            if existing is not None:
                return existing.id
            email = DispatchedEmail(
                request_id=request_id,
                organization_id=organization_id,
                record_id=record_id,
                to_address=to_address,
                template=template,
                subject=subject,
            )
            self.session.add(email)
            self.session.flush()
            return email.id


class SqlRecordClient:
    """Applies owner and field mutations to the engine's copy of the record.

    The record is re-read under a row lock before every mutation. When an
    expected stage and residency are given and the record no longer matches,
    nothing is written and the skip reason is returned.
    """

    def __init__(self, session: Session):
        self.session = session

    def _lock_record(
        self,
        record_id: uuid.UUID,
        expected_stage_id: uuid.UUID | None,
        expected_residency: int | None,
    ) -> tuple[PipelineRecord | None, str | None]:
        record = self.session.scalar(
            select(PipelineRecord)
            .where(PipelineRecord.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if record is None:
            return None, "record_deleted"
        if record.archived_at is not None:
            return None, "record_archived"
        if expected_stage_id is not None and (
            record.current_stage_id != expected_stage_id or record.residency_seq != expected_residency
        ):
            return None, "record_left_stage"
        return record, None

    def _flush(self, record_id: uuid.UUID) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise CollaboratorUnavailable(f"record '{record_id}' changed concurrently") from exc

    def set_owner(
        self,
        record_id: uuid.UUID,
        owner_id: str,
        expected_stage_id: uuid.UUID | None = None,
        expected_residency: int | None = None,
    ) -> str | None:
        with tracer.start_as_current_span("collaborator.record.set_owner") as span:
            set_span_attributes(span, record_id=record_id, expected_stage_id=expected_stage_id)
            record, skip_reason = self._lock_record(record_id, expected_stage_id, expected_residency)
            if record is None:
                span.set_attribute("skip_reason", skip_reason or "")
                return skip_reason
            if record.owner_id == owner_id:
                return None
            record.owner_id = owner_id
            record.updated_at = utcnow()
            self._flush(record_id)
            return None

    def update_field(
        self,
        record_id: uuid.UUID,
        field_key: str,
        value: Any,
        operation: str,
        expected_stage_id: uuid.UUID | None = None,
        expected_residency: int | None = None,
    ) -> str | None:
        with tracer.start_as_current_span("collaborator.record.update_field") as span:
            set_span_attributes(span, record_id=record_id, field=field_key, expected_stage_id=expected_stage_id)
            record, skip_reason = self._lock_record(record_id, expected_stage_id, expected_residency)
            if record is None:
                span.set_attribute("skip_reason", skip_reason or "")
                return skip_reason
            values = dict(record.field_values or {})
            if operation == "append":
                current = values.get(field_key)
                items = list(current) if isinstance(current, list) else ([] if current in (None, "") else [current])
                if value not in items:
                    items.append(value)
                values[field_key] = items
            else:
                values[field_key] = value
            if values == record.field_values:
                return None
            record.field_values = values
            record.updated_at = utcnow()
            self._flush(record_id)
            return None


@dataclass(slots=True)
class DirectoryUser:
    user_id: str
    roles: list[str] = field(default_factory=list)
    specializations: list[str] = field(default_factory=list)
    email: str | None = None


class InMemoryUserDirectory:
    """User directory stub with per-(organization, role) round robin."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, list[DirectoryUser]] = defaultdict(list)
        self._cursors: dict[tuple[str, str], itertools.count] = {}

    def register(self, organization_id: str, user: DirectoryUser) -> None:
        with self._lock:
            self._users[organization_id] = [item for item in self._users[organization_id] if item.user_id != user.user_id]
            self._users[organization_id].append(user)

    def clear(self) -> None:
        with self._lock:
            self._users.clear()
            self._cursors.clear()

    def pick_assignee(
        self,
        organization_id: str,
        role: str | None,
        strategy: str,
        specialization: str | None = None,
    ) -> str | None:
        with self._lock:
            candidates = sorted(
                (user for user in self._users.get(organization_id, []) if role is None or role in user.roles),
                key=lambda item: item.user_id,
            )
            if not candidates:
                return None
            if strategy == "by_specialization" and specialization:
                matching = [user for user in candidates if specialization in user.specializations]
                if matching:
                    candidates = matching
            cursor = self._cursors.setdefault((organization_id, role or "*"), itertools.count())
            return candidates[next(cursor) % len(candidates)].user_id

    def email_for(self, organization_id: str, user_id: str) -> str | None:
        with self._lock:
            for user in self._users.get(organization_id, []):
                if user.user_id == user_id:
                    return user.email
        return None


user_directory = InMemoryUserDirectory()


@dataclass(slots=True)
class Collaborators:
    tasks: TaskClient
    notifications: NotificationClient
    emails: EmailClient
    records: RecordClient
    directory: UserDirectory


CollaboratorsFactory = Callable[[Session], Collaborators]


def build_stub_collaborators(session: Session) -> Collaborators:
    return Collaborators(
        tasks=StubTaskClient(session),
        notifications=StubNotificationClient(session),
        emails=StubEmailClient(session),
        records=SqlRecordClient(session),
        directory=user_directory,
    )
