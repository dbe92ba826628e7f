from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, model_validator


AutomationTrigger = Literal["on_enter", "on_exit", "on_duration"]
ActionType = Literal["create_task", "send_notification", "assign_user", "update_field", "send_email"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
AssigneeStrategy = Literal["explicit", "owner", "by_specialization"]
NotificationAudience = Literal["owner", "explicit"]
NotificationKind = Literal["info", "success", "warning", "error"]
AssignStrategy = Literal["round_robin", "by_specialization"]
ActionRequestStatus = Literal["queued", "running", "succeeded", "skipped", "dead_lettered"]


class _ActionConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class CreateTaskConfig(_ActionConfigModel):
    title: str = Field(default="Follow up required", min_length=1)
    description: str | None = None
    priority: TaskPriority = "medium"
    due_in_hours: int = Field(default=24, ge=0, alias="dueInHours")
    assignee_strategy: AssigneeStrategy = Field(default="owner", alias="assigneeStrategy")
    assignee_user_id: str | None = Field(default=None, alias="assigneeUserId")
    specialization: str | None = None
    assign_to_owner: bool | None = Field(default=None, alias="assignToOwner")
    recurring: bool = False

    @model_validator(mode="after")
    def validate_assignee(self) -> "CreateTaskConfig":
        if self.assign_to_owner and "assignee_strategy" not in self.model_fields_set:
            self.assignee_strategy = "owner"
        if self.assignee_strategy == "explicit" and not self.assignee_user_id:
            raise ValueError("assigneeUserId is required when assigneeStrategy is 'explicit'")
        return self


class SendNotificationConfig(_ActionConfigModel):
    title: str = Field(default="Pipeline update", min_length=1)
    message: str = Field(min_length=1)
    audience: NotificationAudience = "owner"
    user_ids: list[str] = Field(default_factory=list, alias="userIds")
    kind: NotificationKind = Field(default="info", alias="type")

    @model_validator(mode="after")
    def validate_audience(self) -> "SendNotificationConfig":
        if self.audience == "explicit" and not self.user_ids:
            raise ValueError("userIds is required when audience is 'explicit'")
        return self


class AssignUserConfig(_ActionConfigModel):
    role: str = Field(min_length=1)
    strategy: AssignStrategy = "round_robin"
    specialization: str | None = None


class UpdateFieldConfig(_ActionConfigModel):
    field: str = Field(min_length=1)
    value: Any = None
    operation: Literal["set", "append"] | None = None

    @model_validator(mode="after")
    def default_operation(self) -> "UpdateFieldConfig":
        if self.operation is None:
            self.operation = "append" if self.field == "tags" else "set"
        return self


class SendEmailConfig(_ActionConfigModel):
    template: str = Field(min_length=1)
    to: Literal["owner"] | EmailStr = "owner"
    subject: str | None = None


class CreateTaskAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["create_task"]
    config: CreateTaskConfig = Field(default_factory=CreateTaskConfig)


class SendNotificationAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["send_notification"]
    config: SendNotificationConfig


class AssignUserAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["assign_user"]
    config: AssignUserConfig


class UpdateFieldAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["update_field"]
    config: UpdateFieldConfig


class SendEmailAction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["send_email"]
    config: SendEmailConfig


AutomationAction = Annotated[
    CreateTaskAction | SendNotificationAction | AssignUserAction | UpdateFieldAction | SendEmailAction,
    Field(discriminator="type"),
]

automation_action_adapter = TypeAdapter(AutomationAction)
automation_action_list_adapter = TypeAdapter(list[AutomationAction])


def dump_action(action: BaseModel) -> dict[str, Any]:
    return action.model_dump(mode="json", by_alias=True)


class StageAutomationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    trigger: AutomationTrigger
    duration: int | None = Field(default=None, gt=0)
    recurring: bool = False
    is_active: bool = Field(default=True, alias="isActive")
    actions: list[AutomationAction] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_trigger(self) -> "StageAutomationConfig":
        if self.trigger == "on_duration":
            if self.duration is None:
                raise ValueError("duration (minutes) is required for on_duration automations")
        else:
            if self.duration is not None:
                raise ValueError(f"duration is only allowed for on_duration automations, got {self.trigger}")
            if self.recurring:
                raise ValueError(f"recurring is only allowed for on_duration automations, got {self.trigger}")
        return self


class StageDefinitionConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1, max_length=128)
    order: int = Field(ge=1)
    color: str | None = Field(default=None, max_length=16)
    probability: int = Field(default=0, ge=0, le=100)
    description: str | None = None
    intent: str | None = None
    required_fields: list[str] = Field(default_factory=list, alias="requiredFields")
    sub_statuses: list[str] = Field(default_factory=list, alias="subStatuses")
    failure_signals: list[str] = Field(default_factory=list, alias="failureSignals")
    automations: list[StageAutomationConfig] = Field(default_factory=list)


class PipelineTemplateConfig(BaseModel):
    # industry templates also carry UI metadata (icon, entities, customFields)
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = Field(default=None, max_length=64)
    name: str = Field(min_length=1)
    description: str | None = None
    stages: list[StageDefinitionConfig] = Field(min_length=1, alias="pipelineStages")

    @model_validator(mode="after")
    def validate_stages(self) -> "PipelineTemplateConfig":
        orders = [stage.order for stage in self.stages]
        if len(orders) != len(set(orders)):
            raise ValueError("stage order must be unique per pipeline")
        names = [stage.name for stage in self.stages]
        if len(names) != len(set(names)):
            raise ValueError("stage name must be unique per pipeline")
        return self


class AutomationSnapshot(BaseModel):
    id: UUID
    stage_id: UUID
    trigger: AutomationTrigger
    duration_minutes: int | None = None
    recurring: bool = False
    actions: list[AutomationAction]


automation_snapshot_list_adapter = TypeAdapter(list[AutomationSnapshot])


class StageAutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    trigger: AutomationTrigger
    duration_minutes: int | None
    recurring: bool
    is_active: bool
    actions_json: list[dict[str, Any]]


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    order: int
    name: str
    color: str | None
    probability: int
    description: str | None
    intent: str | None
    required_fields: list[str]
    sub_statuses: list[str]
    failure_signals: list[str]
    automations: list[StageAutomationRead]


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    template_key: str | None
    name: str
    description: str | None
    created_at: datetime
    stages: list[StageRead]


class RecordCreate(BaseModel):
    pipeline_id: UUID
    record_id: UUID | None = None
    owner_id: str | None = Field(default=None, max_length=64)
    field_values: dict[str, Any] = Field(default_factory=dict)


class RecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    pipeline_id: UUID
    current_stage_id: UUID
    entered_stage_at: datetime
    residency_seq: int
    owner_id: str | None
    field_values: dict[str, Any]
    archived_at: datetime | None
    row_version: int


class TransitionRequest(BaseModel):
    target_stage_id: UUID
    field_values: dict[str, Any] = Field(default_factory=dict)


class TransitionRead(BaseModel):
    record: RecordRead
    changed: bool
    from_stage_id: UUID
    to_stage_id: UUID
    exit_request_ids: list[str]
    enter_request_ids: list[str]


class ActionRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    record_id: UUID
    stage_id: UUID
    automation_id: UUID
    trigger: AutomationTrigger
    residency_seq: int
    epoch: int
    action_index: int
    action_type: ActionType
    config: dict[str, Any]
    triggered_at: datetime
    status: ActionRequestStatus
    attempts: int
    run_after: datetime
    last_error: str | None
    completed_at: datetime | None


class DeadLetterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str
    action_type: ActionType
    reason: str
    payload: dict[str, Any]
    attempts: int
    first_failed_at: datetime
    last_failed_at: datetime
    requeued_at: datetime | None


class ScanRunRead(BaseModel):
    requests_emitted: int


class DrainRead(BaseModel):
    processed: int
    succeeded: int
    skipped: int
    retried: int
    dead_lettered: int
