from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stageflow import audit
from stageflow.automation.config_store import PipelineConfigStore, parse_pipeline_config
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.errors import PipelineConfigError, PipelineNotFound
from stageflow.automation.models import PipelineTemplate, StageAutomation
from stageflow.automation.templates import get_industry_template, list_industry_templates
from stageflow.core.database import Base


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
    yield
    audit.audit_entries.clear()


@pytest.fixture()
def ctx() -> OrgPipelineContext:
    return OrgPipelineContext(organization_id="org-config", actor_user_id="builder-1", correlation_id="corr-config")


def _payload(**overrides: object) -> dict:
    payload = {
        "name": "Support Desk",
        "pipelineStages": [
            {
                "name": "New",
                "order": 1,
                "automations": [
                    {"trigger": "on_enter", "actions": [{"type": "create_task", "config": {"title": "Triage"}}]},
                    {
                        "trigger": "on_duration",
                        "duration": 60,
                        "recurring": True,
                        "actions": [{"type": "send_notification", "config": {"message": "Still new"}}],
                    },
                    {
                        "trigger": "on_exit",
                        "isActive": False,
                        "actions": [{"type": "update_field", "config": {"field": "tags", "value": "left-new"}}],
                    },
                ],
            },
            {"name": "Resolved", "order": 2, "requiredFields": ["resolution"]},
        ],
    }
    payload.update(overrides)
    return payload


def test_create_pipeline_persists_stages_and_automations(db_session: Session, ctx: OrgPipelineContext) -> None:
    store = PipelineConfigStore()
    pipeline = store.create_pipeline(db_session, ctx, _payload())

    assert pipeline.organization_id == "org-config"
    assert [stage.name for stage in pipeline.stages] == ["New", "Resolved"]
    assert pipeline.stages[1].required_fields == ["resolution"]

    automations = pipeline.stages[0].automations
    assert [item.trigger for item in automations] == ["on_enter", "on_duration", "on_exit"]
    assert automations[1].duration_minutes == 60
    assert automations[1].recurring is True
    assert automations[2].is_active is False
    assert automations[0].actions_json[0]["config"]["title"] == "Triage"
    assert automations[0].actions_json[0]["config"]["dueInHours"] == 24

    created = [entry for entry in audit.audit_entries if entry["entity_type"] == "automation.pipeline"]
    assert created and created[-1]["correlation_id"] == "corr-config"


def test_default_stage_is_lowest_order(db_session: Session, ctx: OrgPipelineContext) -> None:
    store = PipelineConfigStore()
    payload = _payload()
    payload["pipelineStages"] = list(reversed(payload["pipelineStages"]))
    pipeline = store.create_pipeline(db_session, ctx, payload)

    assert store.default_stage(db_session, pipeline.id).name == "New"
    assert [stage.order for stage in store.list_stages(db_session, pipeline.id)] == [1, 2]
    assert store.get_stage_by_name(db_session, pipeline.id, "Resolved") is not None


def test_stage_snapshot_skips_inactive_automations(db_session: Session, ctx: OrgPipelineContext) -> None:
    store = PipelineConfigStore()
    pipeline = store.create_pipeline(db_session, ctx, _payload())
    stage = pipeline.stages[0]

    snapshot = store.stage_snapshot(stage)
    assert [item["trigger"] for item in snapshot] == ["on_enter", "on_duration"]

    loaded = store.load_snapshot(snapshot)
    assert loaded[0].stage_id == stage.id
    assert loaded[0].actions[0].config.title == "Triage"
    assert loaded[1].duration_minutes == 60


@pytest.mark.parametrize(
    ("automation", "fragment"),
    [
        ({"trigger": "on_duration", "actions": [{"type": "create_task", "config": {}}]}, "duration"),
        ({"trigger": "on_enter", "recurring": True, "actions": [{"type": "create_task", "config": {}}]}, "recurring"),
        ({"trigger": "on_exit", "duration": 30, "actions": [{"type": "create_task", "config": {}}]}, "duration"),
        ({"trigger": "on_enter", "actions": []}, "at least 1"),
        ({"trigger": "on_enter", "actions": [{"type": "call_webhook", "config": {}}]}, "call_webhook"),
        (
            {"trigger": "on_enter", "actions": [{"type": "create_task", "config": {"assigneeStrategy": "explicit"}}]},
            "assigneeUserId",
        ),
        (
            {"trigger": "on_enter", "actions": [{"type": "send_email", "config": {"template": "x", "to": "not-an-email"}}]},
            "email",
        ),
    ],
)
def test_invalid_automation_config_is_rejected(automation: dict, fragment: str) -> None:
    payload = {"name": "Broken", "pipelineStages": [{"name": "Only", "order": 1, "automations": [automation]}]}

    with pytest.raises(PipelineConfigError) as exc_info:
        parse_pipeline_config(payload)

    assert exc_info.value.errors
    assert any(fragment in error["msg"] or fragment in "".join(error["loc"]) for error in exc_info.value.errors)


def test_duplicate_stage_order_is_rejected() -> None:
    payload = {
        "name": "Dupes",
        "pipelineStages": [{"name": "A", "order": 1}, {"name": "B", "order": 1}],
    }
    with pytest.raises(PipelineConfigError):
        parse_pipeline_config(payload)


def test_pipeline_without_stages_is_rejected() -> None:
    with pytest.raises(PipelineConfigError):
        parse_pipeline_config({"name": "Empty", "pipelineStages": []})


def test_invalid_config_persists_nothing(db_session: Session, ctx: OrgPipelineContext) -> None:
    store = PipelineConfigStore()
    with pytest.raises(PipelineConfigError):
        store.create_pipeline(db_session, ctx, {"name": "Broken", "pipelineStages": [{"name": "A", "order": 0}]})

    assert db_session.scalars(select(PipelineTemplate)).all() == []


@pytest.mark.parametrize("industry_id", list_industry_templates())
def test_industry_templates_load(industry_id: str) -> None:
    template = get_industry_template(industry_id)
    assert template is not None

    config = parse_pipeline_config(template)
    assert len(config.stages) == 9
    assert [stage.order for stage in config.stages] == list(range(1, 10))


def test_recruitment_offer_stage_carries_three_day_escalation() -> None:
    config = parse_pipeline_config(get_industry_template("recruitment"))
    offer = next(stage for stage in config.stages if stage.name == "Offer Rolled Out")

    assert offer.required_fields == ["offerCTC", "offerDate", "joiningDate"]
    duration = [item for item in offer.automations if item.trigger == "on_duration"]
    assert len(duration) == 1
    assert duration[0].duration == 4320
    assert duration[0].recurring is False
    assert duration[0].actions[0].config.title == "URGENT: Offer pending for 3 days - escalate"


def test_get_industry_template_returns_copy() -> None:
    first = get_industry_template("sme")
    first["name"] = "changed"
    assert get_industry_template("sme")["name"] != "changed"
    assert get_industry_template("unknown") is None


def test_apply_industry_template_is_idempotent_per_organization(db_session: Session, ctx: OrgPipelineContext) -> None:
    store = PipelineConfigStore()
    first = store.apply_industry_template(db_session, ctx, "recruitment")
    second = store.apply_industry_template(db_session, ctx, "recruitment")
    other_org = store.apply_industry_template(db_session, OrgPipelineContext(organization_id="org-other"), "recruitment")

    assert first.id == second.id
    assert other_org.id != first.id
    assert first.template_key == "recruitment"
    assert db_session.scalars(select(StageAutomation)).all()


def test_apply_unknown_template_raises(db_session: Session, ctx: OrgPipelineContext) -> None:
    with pytest.raises(PipelineNotFound):
        PipelineConfigStore().apply_industry_template(db_session, ctx, "aerospace")


def test_get_pipeline_is_scoped_to_organization(db_session: Session, ctx: OrgPipelineContext) -> None:
    store = PipelineConfigStore()
    pipeline = store.create_pipeline(db_session, ctx, _payload())

    assert store.get_pipeline(db_session, ctx, pipeline.id).id == pipeline.id
    with pytest.raises(PipelineNotFound):
        store.get_pipeline(db_session, OrgPipelineContext(organization_id="org-other"), pipeline.id)
    with pytest.raises(PipelineNotFound):
        store.get_pipeline(db_session, ctx, uuid.uuid4())
