from __future__ import annotations

import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from stageflow import audit
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.errors import PipelineConfigError, PipelineNotFound
from stageflow.automation.models import PipelineTemplate, StageAutomation, StageDefinition
from stageflow.automation.schemas import (
    AutomationSnapshot,
    PipelineTemplateConfig,
    automation_action_list_adapter,
    automation_snapshot_list_adapter,
    dump_action,
)
from stageflow.automation.templates import get_industry_template


logger = logging.getLogger("stageflow.automation.config")


def parse_pipeline_config(payload: PipelineTemplateConfig | dict[str, Any]) -> PipelineTemplateConfig:
    if isinstance(payload, PipelineTemplateConfig):
        return payload
    try:
        return PipelineTemplateConfig.model_validate(payload)
    except ValidationError as exc:
        errors = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
            for error in exc.errors()
        ]
        raise PipelineConfigError(f"Invalid pipeline configuration ({len(errors)} errors)", errors) from exc


class PipelineConfigStore:
    def create_pipeline(
        self,
        session: Session,
        ctx: OrgPipelineContext,
        payload: PipelineTemplateConfig | dict[str, Any],
    ) -> PipelineTemplate:
        config = parse_pipeline_config(payload)
        pipeline = PipelineTemplate(
            organization_id=ctx.organization_id,
            template_key=config.id,
            name=config.name,
            description=config.description,
        )
        for stage_config in sorted(config.stages, key=lambda item: item.order):
            stage = StageDefinition(
                order=stage_config.order,
                name=stage_config.name,
                color=stage_config.color,
                probability=stage_config.probability,
                description=stage_config.description,
                intent=stage_config.intent,
                required_fields=list(stage_config.required_fields),
                sub_statuses=list(stage_config.sub_statuses),
                failure_signals=list(stage_config.failure_signals),
            )
            for position, automation_config in enumerate(stage_config.automations):
                stage.automations.append(
                    StageAutomation(
                        position=position,
                        trigger=automation_config.trigger,
                        duration_minutes=automation_config.duration,
                        recurring=automation_config.recurring,
                        is_active=automation_config.is_active,
                        actions_json=[dump_action(action) for action in automation_config.actions],
                    )
                )
            pipeline.stages.append(stage)

        session.add(pipeline)
        session.commit()
        session.refresh(pipeline)

        audit.record(
            actor_user_id=ctx.actor_user_id,
            entity_type="automation.pipeline",
            entity_id=str(pipeline.id),
            action="create",
            before=None,
            after={"name": pipeline.name, "template_key": pipeline.template_key, "stages": len(pipeline.stages)},
            correlation_id=ctx.correlation_id,
            organization_id=ctx.organization_id,
        )
        logger.info(
            "pipeline.created",
            extra={"organization_id": ctx.organization_id, "pipeline_id": str(pipeline.id)},
        )
        return pipeline

    def apply_industry_template(self, session: Session, ctx: OrgPipelineContext, industry_id: str) -> PipelineTemplate:
        template = get_industry_template(industry_id)
        if template is None:
            raise PipelineNotFound(industry_id)

        existing = session.scalar(
            select(PipelineTemplate).where(
                PipelineTemplate.organization_id == ctx.organization_id,
                PipelineTemplate.template_key == industry_id,
            )
        )
        if existing is not None:
            return existing
        return self.create_pipeline(session, ctx, template)

    def get_pipeline(self, session: Session, ctx: OrgPipelineContext, pipeline_id: uuid.UUID) -> PipelineTemplate:
        pipeline = session.get(PipelineTemplate, pipeline_id)
        if pipeline is None or pipeline.organization_id != ctx.organization_id:
            raise PipelineNotFound(pipeline_id)
        return pipeline

    def list_stages(self, session: Session, pipeline_id: uuid.UUID) -> list[StageDefinition]:
        return list(
            session.scalars(
                select(StageDefinition)
                .where(StageDefinition.pipeline_id == pipeline_id)
                .order_by(StageDefinition.order.asc())
            ).all()
        )

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> StageDefinition | None:
        return session.get(StageDefinition, stage_id)

    def get_stage_by_name(self, session: Session, pipeline_id: uuid.UUID, name: str) -> StageDefinition | None:
        return session.scalar(
            select(StageDefinition).where(StageDefinition.pipeline_id == pipeline_id, StageDefinition.name == name)
        )

    def default_stage(self, session: Session, pipeline_id: uuid.UUID) -> StageDefinition:
        stage = session.scalar(
            select(StageDefinition)
            .where(StageDefinition.pipeline_id == pipeline_id)
            .order_by(StageDefinition.order.asc())
            .limit(1)
        )
        if stage is None:
            raise PipelineConfigError(f"Pipeline '{pipeline_id}' has no stages")
        return stage

    def stage_snapshot(self, stage: StageDefinition) -> list[dict[str, Any]]:
        snapshots: list[dict[str, Any]] = []
        for automation in stage.automations:
            if not automation.is_active:
                continue
            snapshot = AutomationSnapshot(
                id=automation.id,
                stage_id=stage.id,
                trigger=automation.trigger,
                duration_minutes=automation.duration_minutes,
                recurring=automation.recurring,
                actions=automation_action_list_adapter.validate_python(automation.actions_json),
            )
            snapshots.append(snapshot.model_dump(mode="json", by_alias=True))
        return snapshots

    def load_snapshot(self, snapshot_json: list[dict[str, Any]]) -> list[AutomationSnapshot]:
        return automation_snapshot_list_adapter.validate_python(snapshot_json)


pipeline_config_store = PipelineConfigStore()
