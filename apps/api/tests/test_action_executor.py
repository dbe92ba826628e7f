from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Generator
from dataclasses import replace
from pathlib import Path
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit, events
from stageflow.automation.collaborators import (
    Collaborators,
    DirectoryUser,
    SqlRecordClient,
    StubTaskClient,
    build_stub_collaborators,
    user_directory,
)
from stageflow.automation.config_store import PipelineConfigStore
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.coordinator import StageTransitionCoordinator
from stageflow.automation.errors import CollaboratorRejected, CollaboratorUnavailable, DeadLetterNotFound
from stageflow.automation.executor import ActionExecutor, DrainSummary, compute_backoff_seconds
from stageflow.automation.models import (
    ActionRequest,
    DeadLetterEntry,
    DispatchedEmail,
    DispatchedNotification,
    DispatchedTask,
    PipelineRecord,
    PipelineTemplate,
    as_utc,
)
from stageflow.automation.records import RecordRegistry
from stageflow.automation.scheduler import DurationScanScheduler
from stageflow.core.config import get_settings
from stageflow.core.database import Base


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class _FailingTasks:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    def create_task(self, **kwargs: Any) -> None:
        self.calls += 1
        raise self.error


def _factory_failing(failing: _FailingTasks, failures: int | None = None) -> Callable[[Session], Collaborators]:
    remaining = {"count": failures}

    def factory(session: Session) -> Collaborators:
        collaborators = build_stub_collaborators(session)
        if remaining["count"] is None:
            return replace(collaborators, tasks=failing)
        if remaining["count"] > 0:
            remaining["count"] -= 1
            return replace(collaborators, tasks=failing)
        return collaborators

    return factory


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    user_directory.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    user_directory.clear()
    get_settings.cache_clear()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture()
def ctx() -> OrgPipelineContext:
    return OrgPipelineContext(organization_id="org-exec", actor_user_id="ops-1", correlation_id="corr-exec")


@pytest.fixture()
def config_store() -> PipelineConfigStore:
    return PipelineConfigStore()


@pytest.fixture()
def registry(config_store: PipelineConfigStore, clock: FakeClock) -> RecordRegistry:
    return RecordRegistry(config_store=config_store, clock=clock)


@pytest.fixture()
def executor(clock: FakeClock) -> ActionExecutor:
    return ActionExecutor(clock=clock, worker_id="worker-test")


def _pipeline(
    session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    actions: list[dict],
    trigger: str = "on_enter",
    extra: dict | None = None,
) -> PipelineTemplate:
    automation: dict[str, Any] = {"trigger": trigger, "actions": actions}
    automation.update(extra or {})
    return config_store.create_pipeline(
        session,
        ctx,
        {
            "name": "Executor",
            "pipelineStages": [
                {"name": "Intake", "order": 1, "automations": [automation]},
                {"name": "Closed", "order": 2},
            ],
        },
    )


def _requests(session: Session, record_id: uuid.UUID) -> list[ActionRequest]:
    return list(
        session.scalars(
            select(ActionRequest)
            .where(ActionRequest.record_id == record_id)
            .order_by(ActionRequest.id.asc())
            .execution_options(populate_existing=True)
        ).all()
    )


def test_backoff_doubles_until_cap() -> None:
    assert [compute_backoff_seconds(attempt, 30, 3600) for attempt in (0, 1, 2, 3, 4)] == [30, 30, 60, 120, 240]
    assert compute_backoff_seconds(10, 30, 3600) == 3600


def test_drain_summary_counts_statuses() -> None:
    summary = DrainSummary()
    for status in ("succeeded", "skipped", "queued", "dead_lettered", "succeeded"):
        summary.add(status)

    assert (summary.processed, summary.succeeded, summary.skipped, summary.retried, summary.dead_lettered) == (5, 2, 1, 1, 1)


def test_create_task_runs_once_with_owner_and_due_date(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
    clock: FakeClock,
) -> None:
    pipeline = _pipeline(
        db_session,
        ctx,
        config_store,
        [{"type": "create_task", "config": {"title": "Call back", "priority": "high", "dueInHours": 6}}],
    )
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record

    summary = executor.drain(db_session)

    assert summary.processed == 1 and summary.succeeded == 1
    task = db_session.scalars(select(DispatchedTask)).one()
    assert task.title == "Call back"
    assert task.priority == "high"
    assert task.assignee_user_id == "owner-1"
    assert as_utc(task.due_at) == clock.now + timedelta(hours=6)

    request = _requests(db_session, record.id)[0]
    assert request.status == "succeeded"
    assert request.attempts == 1
    assert request.locked_by is None
    assert as_utc(request.completed_at) == clock.now

    assert executor.process_request(db_session, request.request_id) == "succeeded"
    assert executor.drain(db_session).processed == 0
    assert executor.process_request(db_session, "does-not-exist") == "missing"
    assert db_session.scalar(select(func.count()).select_from(DispatchedTask)) == 1


def test_deleted_record_discards_pending_duration_action(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
    clock: FakeClock,
) -> None:
    pipeline = _pipeline(
        db_session,
        ctx,
        config_store,
        [{"type": "create_task", "config": {"title": "Escalate stale record"}}],
        trigger="on_duration",
        extra={"duration": 60},
    )
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record
    record_id = record.id
    clock.advance(minutes=61)
    assert DurationScanScheduler(config_store=config_store, clock=clock).scan_once(db_session, ctx) == 1

    registry.retire_record(db_session, ctx, record_id, hard=True)
    summary = executor.drain(db_session)

    assert summary.skipped == 1
    request = _requests(db_session, record_id)[0]
    assert request.status == "skipped"
    assert request.last_error == "record_deleted"
    assert db_session.scalar(select(func.count()).select_from(DispatchedTask)) == 0


def test_archived_record_skips_action(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
) -> None:
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record
    registry.retire_record(db_session, ctx, record.id)

    executor.drain(db_session)

    assert _requests(db_session, record.id)[0].last_error == "record_archived"
    assert db_session.scalar(select(func.count()).select_from(DispatchedTask)) == 0


def test_transient_failure_is_retried_after_backoff(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    clock: FakeClock,
) -> None:
    failing = _FailingTasks(CollaboratorUnavailable("tasks service down"))
    executor = ActionExecutor(collaborators_factory=_factory_failing(failing, failures=1), clock=clock, worker_id="worker-test")
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record

    first = executor.drain(db_session)
    assert first.retried == 1
    request = _requests(db_session, record.id)[0]
    assert request.status == "queued"
    assert request.attempts == 1
    assert request.last_error == "tasks service down"
    assert as_utc(request.run_after) == clock.now + timedelta(seconds=30)

    assert executor.drain(db_session).processed == 0

    clock.advance(seconds=30)
    second = executor.drain(db_session)
    assert second.succeeded == 1
    request = _requests(db_session, record.id)[0]
    assert request.status == "succeeded"
    assert request.attempts == 2
    assert failing.calls == 1
    assert db_session.scalar(select(func.count()).select_from(DispatchedTask)) == 1


def test_exhausted_retries_dead_letter_then_requeue(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ACTION_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    failing = _FailingTasks(CollaboratorUnavailable("tasks service down"))
    broken = ActionExecutor(collaborators_factory=_factory_failing(failing), clock=clock, worker_id="worker-test")
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record
    request_id = _requests(db_session, record.id)[0].request_id

    assert broken.drain(db_session).retried == 1
    clock.advance(seconds=30)
    assert broken.drain(db_session).dead_lettered == 1

    request = _requests(db_session, record.id)[0]
    assert request.status == "dead_lettered"
    entries = broken.list_dead_letters(db_session, ctx)
    assert [entry.request_id for entry in entries] == [request_id]
    assert entries[0].attempts == 2
    assert entries[0].reason == "tasks service down"
    assert entries[0].payload["config"]["title"] == "Call back"
    assert broken.list_dead_letters(db_session, OrgPipelineContext(organization_id="org-other")) == []
    assert [entry["action"] for entry in audit.audit_entries if entry["entity_type"] == "automation.action_request"] == [
        "dead_lettered"
    ]

    clock.advance(minutes=5)
    requeued = broken.requeue_dead_letter(db_session, ctx, request_id)
    assert requeued.status == "queued"
    assert requeued.attempts == 0
    assert broken.list_dead_letters(db_session, ctx) == []
    assert len(broken.list_dead_letters(db_session, ctx, include_requeued=True)) == 1
    with pytest.raises(DeadLetterNotFound):
        broken.requeue_dead_letter(db_session, ctx, request_id)

    healthy = ActionExecutor(clock=clock, worker_id="worker-test")
    assert healthy.drain(db_session).succeeded == 1
    assert _requests(db_session, record.id)[0].status == "succeeded"


def test_permanent_rejection_dead_letters_immediately(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    clock: FakeClock,
) -> None:
    failing = _FailingTasks(CollaboratorRejected("assignee is deactivated"))
    executor = ActionExecutor(collaborators_factory=_factory_failing(failing), clock=clock, worker_id="worker-test")
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record

    assert executor.drain(db_session).dead_lettered == 1
    request = _requests(db_session, record.id)[0]
    assert request.status == "dead_lettered"
    assert request.attempts == 1
    entry = db_session.scalars(select(DeadLetterEntry)).one()
    assert entry.reason == "assignee is deactivated"


def test_unexpected_collaborator_error_is_retried(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    failing = _FailingTasks(RuntimeError("socket closed"))
    executor = ActionExecutor(collaborators_factory=_factory_failing(failing), clock=clock, worker_id="worker-test")
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record

    assert executor.drain(db_session).retried == 1
    request = _requests(db_session, record.id)[0]
    assert request.status == "queued"
    assert request.last_error == "RuntimeError: socket closed"
    assert any(item.getMessage() == "action.collaborator_error" for item in caplog.records)
    assert any(
        item.getMessage() == "action.retry_scheduled" and getattr(item, "request_id", None) == request.request_id
        for item in caplog.records
    )


def test_invalid_stored_config_is_dead_lettered(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
) -> None:
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record
    request = _requests(db_session, record.id)[0]
    request.config = {"title": ""}
    db_session.commit()

    assert executor.drain(db_session).dead_lettered == 1
    request = _requests(db_session, record.id)[0]
    assert request.status == "dead_lettered"
    assert request.last_error.startswith("invalid action config")


def test_assign_user_round_robin_and_missing_candidate(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
) -> None:
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "assign_user", "config": {"role": "recruiter"}}])
    unassigned = registry.create_record(db_session, ctx, pipeline.id).record
    assert executor.drain(db_session).skipped == 1
    assert _requests(db_session, unassigned.id)[0].last_error == "no_candidate"

    user_directory.register("org-exec", DirectoryUser(user_id="u-2", roles=["recruiter"]))
    user_directory.register("org-exec", DirectoryUser(user_id="u-1", roles=["recruiter"]))
    user_directory.register("org-exec", DirectoryUser(user_id="u-9", roles=["finance"]))
    record_ids = [registry.create_record(db_session, ctx, pipeline.id).record.id for _ in range(3)]

    assert executor.drain(db_session).succeeded == 3
    db_session.expire_all()
    owners = [db_session.get(PipelineRecord, record_id).owner_id for record_id in record_ids]
    assert owners == ["u-1", "u-2", "u-1"]


def test_assign_user_prefers_matching_specialization(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
) -> None:
    user_directory.register("org-exec", DirectoryUser(user_id="u-java", roles=["recruiter"], specializations=["java"]))
    user_directory.register("org-exec", DirectoryUser(user_id="u-go", roles=["recruiter"], specializations=["go"]))
    pipeline = _pipeline(
        db_session,
        ctx,
        config_store,
        [{"type": "assign_user", "config": {"role": "recruiter", "strategy": "by_specialization"}}],
    )
    record = registry.create_record(db_session, ctx, pipeline.id, field_values={"specialization": "go"}).record

    assert executor.drain(db_session).succeeded == 1
    db_session.expire_all()
    assert db_session.get(PipelineRecord, record.id).owner_id == "u-go"


def test_notifications_resolve_recipients(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
) -> None:
    pipeline = _pipeline(
        db_session,
        ctx,
        config_store,
        [
            {"type": "send_notification", "config": {"message": "New record"}},
            {
                "type": "send_notification",
                "config": {"message": "Team heads-up", "audience": "explicit", "userIds": ["u-7", "u-8"], "type": "warning"},
            },
        ],
    )
    record = registry.create_record(db_session, ctx, pipeline.id).record

    summary = executor.drain(db_session)

    assert (summary.skipped, summary.succeeded) == (1, 1)
    requests = _requests(db_session, record.id)
    assert requests[0].last_error == "no_recipient"
    notification = db_session.scalars(select(DispatchedNotification)).one()
    assert notification.recipient_user_ids == ["u-7", "u-8"]
    assert notification.kind == "warning"
    assert notification.request_id == requests[1].request_id


def test_email_recipients_and_skips(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
) -> None:
    user_directory.register("org-exec", DirectoryUser(user_id="owner-1", email="owner-1@stageflow.io"))
    pipeline = _pipeline(
        db_session,
        ctx,
        config_store,
        [
            {"type": "send_email", "config": {"template": "welcome", "subject": "Welcome aboard"}},
            {"type": "send_email", "config": {"template": "ops-alert", "to": "ops@stageflow.io"}},
        ],
    )
    with_email = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record
    without_email = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-2").record
    without_owner = registry.create_record(db_session, ctx, pipeline.id).record

    summary = executor.drain(db_session)

    assert (summary.processed, summary.succeeded, summary.skipped) == (6, 4, 2)
    assert _requests(db_session, without_email.id)[0].last_error == "no_recipient_email"
    assert _requests(db_session, without_owner.id)[0].last_error == "no_recipient"
    sent = db_session.scalars(select(DispatchedEmail).where(DispatchedEmail.record_id == with_email.id)).all()
    assert sorted(item.to_address for item in sent) == ["ops@stageflow.io", "owner-1@stageflow.io"]


def test_exit_actions_run_after_record_has_moved(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
    clock: FakeClock,
) -> None:
    pipeline = config_store.create_pipeline(
        db_session,
        ctx,
        {
            "name": "Tagging",
            "pipelineStages": [
                {
                    "name": "Draft",
                    "order": 1,
                    "automations": [
                        {"trigger": "on_enter", "actions": [{"type": "create_task", "config": {"title": "Fill in draft"}}]},
                        {
                            "trigger": "on_exit",
                            "actions": [
                                {"type": "update_field", "config": {"field": "tags", "value": "left-draft"}},
                                {"type": "update_field", "config": {"field": "status", "value": "submitted"}},
                            ],
                        },
                    ],
                },
                {"name": "Review", "order": 2},
            ],
        },
    )
    review = next(stage for stage in pipeline.stages if stage.name == "Review")
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1", field_values={"tags": ["vip"]}).record
    StageTransitionCoordinator(config_store=config_store, clock=clock).request_transition(db_session, ctx, record.id, review.id)

    executor.drain(db_session)

    requests = _requests(db_session, record.id)
    assert [(item.trigger, item.status) for item in requests] == [
        ("on_enter", "skipped"),
        ("on_exit", "succeeded"),
        ("on_exit", "succeeded"),
    ]
    assert requests[0].last_error == "record_left_stage"
    db_session.expire_all()
    values = db_session.get(PipelineRecord, record.id).field_values
    assert values["tags"] == ["vip", "left-draft"]
    assert values["status"] == "submitted"
    assert db_session.scalar(select(func.count()).select_from(DispatchedTask)) == 0


def test_stale_running_request_is_reclaimed(
    db_session: Session,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    registry: RecordRegistry,
    executor: ActionExecutor,
    clock: FakeClock,
) -> None:
    pipeline = _pipeline(db_session, ctx, config_store, [{"type": "create_task", "config": {"title": "Call back"}}])
    record = registry.create_record(db_session, ctx, pipeline.id, owner_id="owner-1").record

    crashed = ActionExecutor(clock=clock, worker_id="worker-crashed")
    assert len(crashed.claim_batch(db_session)) == 1
    assert executor.drain(db_session).processed == 0

    clock.advance(seconds=get_settings().action_lock_timeout_seconds + 1)
    assert executor.drain(db_session).succeeded == 1
    request = _requests(db_session, record.id)[0]
    assert request.attempts == 2
    assert request.status == "succeeded"


def test_stub_task_client_is_idempotent_per_request(
    db_session: Session,
    clock: FakeClock,
) -> None:
    client = StubTaskClient(db_session)
    kwargs: dict[str, Any] = {
        "request_id": "req-1",
        "organization_id": "org-exec",
        "record_id": uuid.uuid4(),
        "title": "Call back",
        "description": None,
        "priority": "medium",
        "due_at": clock.now,
        "assignee_user_id": None,
        "recurring": False,
    }

    first = client.create_task(**kwargs)
    second = client.create_task(**kwargs)
    db_session.commit()

    assert first == second
    assert db_session.scalar(select(func.count()).select_from(DispatchedTask)) == 1


class _RacingRecordClient(SqlRecordClient):
    """Commits a transition from a second session at a chosen point of the write."""

    def __init__(self, session: Session, race: Callable[[], None], before_read: bool, state: dict[str, bool]):
        super().__init__(session)
        self.race = race
        self.before_read = before_read
        self.state = state

    def _lock_record(
        self,
        record_id: uuid.UUID,
        expected_stage_id: uuid.UUID | None,
        expected_residency: int | None,
    ) -> tuple[PipelineRecord | None, str | None]:
        if self.before_read:
            self._race_once()
        result = super()._lock_record(record_id, expected_stage_id, expected_residency)
        if not self.before_read:
            self._race_once()
        return result

    def _race_once(self) -> None:
        if not self.state["raced"]:
            self.state["raced"] = True
            self.race()


def _racing_setup(
    tmp_path: Path,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    clock: FakeClock,
    before_read: bool,
) -> tuple[sessionmaker, ActionExecutor, uuid.UUID]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as session:
        pipeline = config_store.create_pipeline(
            session,
            ctx,
            {
                "name": "Hiring",
                "pipelineStages": [
                    {
                        "name": "Intake",
                        "order": 1,
                        "automations": [
                            {
                                "trigger": "on_enter",
                                "actions": [{"type": "update_field", "config": {"field": "tags", "value": "hot"}}],
                            }
                        ],
                    },
                    {"name": "Closed", "order": 2, "requiredFields": ["offerCTC"]},
                ],
            },
        )
        closed_id = next(stage.id for stage in pipeline.stages if stage.name == "Closed")
        record_id = RecordRegistry(config_store=config_store, clock=clock).create_record(session, ctx, pipeline.id).record.id

    coordinator = StageTransitionCoordinator(config_store=config_store, clock=clock)

    def move_to_closed() -> None:
        with SessionLocal() as other:
            coordinator.request_transition(other, ctx, record_id, closed_id, {"offerCTC": "18 LPA"})

    state = {"raced": False}
    executor = ActionExecutor(
        collaborators_factory=lambda session: replace(
            build_stub_collaborators(session),
            records=_RacingRecordClient(session, move_to_closed, before_read, state),
        ),
        clock=clock,
        worker_id="worker-test",
    )
    return SessionLocal, executor, record_id


def test_field_update_is_skipped_when_record_moves_before_write(
    tmp_path: Path,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    clock: FakeClock,
) -> None:
    SessionLocal, executor, record_id = _racing_setup(tmp_path, ctx, config_store, clock, before_read=True)

    with SessionLocal() as session:
        summary = executor.drain(session)
        assert summary.skipped == 1
        request = _requests(session, record_id)[0]
        assert request.status == "skipped"
        assert request.last_error == "record_left_stage"

    with SessionLocal() as session:
        record = session.get(PipelineRecord, record_id)
        assert record.field_values["offerCTC"] == "18 LPA"
        assert "tags" not in record.field_values
        assert record.residency_seq == 2
        assert record.row_version == 2
    SessionLocal.kw["bind"].dispose()


def test_stale_field_update_is_retried_then_skipped(
    tmp_path: Path,
    ctx: OrgPipelineContext,
    config_store: PipelineConfigStore,
    clock: FakeClock,
) -> None:
    SessionLocal, executor, record_id = _racing_setup(tmp_path, ctx, config_store, clock, before_read=False)

    with SessionLocal() as session:
        assert executor.drain(session).retried == 1
        request = _requests(session, record_id)[0]
        assert request.status == "queued"
        assert request.last_error == f"record '{record_id}' changed concurrently"

        clock.advance(seconds=30)
        assert executor.drain(session).skipped == 1
        request = _requests(session, record_id)[0]
        assert request.status == "skipped"
        assert request.last_error == "record_left_stage"

    with SessionLocal() as session:
        record = session.get(PipelineRecord, record_id)
        assert record.field_values["offerCTC"] == "18 LPA"
        assert "tags" not in record.field_values
        assert record.row_version == 2
    SessionLocal.kw["bind"].dispose()
