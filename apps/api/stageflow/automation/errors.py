from __future__ import annotations

import uuid


class AutomationError(Exception):
    """Base error for the stage automation engine."""

    code = "automation_error"


class PipelineConfigError(AutomationError):
    """Raised when pipeline or stage configuration fails validation at load time."""

    code = "pipeline_config_invalid"

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class PipelineNotFound(AutomationError):
    code = "pipeline_not_found"

    def __init__(self, pipeline_id: uuid.UUID | str) -> None:
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline '{pipeline_id}' not found")


class TransitionError(AutomationError):
    """Caller-facing rejection of a stage transition. No side effect has been applied."""


class RecordNotFound(TransitionError):
    code = "record_not_found"

    def __init__(self, record_id: uuid.UUID) -> None:
        self.record_id = record_id
        super().__init__(f"Record '{record_id}' not found")


class InvalidStageForPipeline(TransitionError):
    code = "invalid_stage_for_pipeline"

    def __init__(self, stage_id: uuid.UUID, pipeline_id: uuid.UUID) -> None:
        self.stage_id = stage_id
        self.pipeline_id = pipeline_id
        super().__init__(f"Stage '{stage_id}' does not belong to pipeline '{pipeline_id}'")


class RequiredFieldMissing(TransitionError):
    code = "required_field_missing"

    def __init__(self, missing_fields: list[str]) -> None:
        self.missing_fields = list(missing_fields)
        super().__init__(f"Required fields missing: {', '.join(self.missing_fields)}")


class ConcurrentTransition(TransitionError):
    code = "concurrent_transition"

    def __init__(self, record_id: uuid.UUID) -> None:
        self.record_id = record_id
        super().__init__(f"Record '{record_id}' was modified concurrently")


class ActionDeliveryFailed(AutomationError):
    """Raised by the executor when a collaborator could not apply an action."""

    code = "action_delivery_failed"

    def __init__(self, request_id: str, reason: str, permanent: bool = False) -> None:
        self.request_id = request_id
        self.reason = reason
        self.permanent = permanent
        super().__init__(f"Action request '{request_id}' failed: {reason}")


class CollaboratorUnavailable(AutomationError):
    """Transient collaborator failure; the request is retried with backoff."""

    code = "collaborator_unavailable"


class CollaboratorRejected(AutomationError):
    """Permanent collaborator failure; the request goes straight to the dead-letter store."""

    code = "collaborator_rejected"


class ScanTickFailed(AutomationError):
    code = "scan_tick_failed"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Duration scan tick failed: {reason}")


class DeadLetterNotFound(AutomationError):
    code = "dead_letter_not_found"

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Dead letter '{request_id}' not found")
