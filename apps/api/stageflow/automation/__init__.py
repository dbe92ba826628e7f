from stageflow.automation.api import operations_router, pipelines_router, records_router
from stageflow.automation.config_store import PipelineConfigStore, pipeline_config_store
from stageflow.automation.context import OrgPipelineContext
from stageflow.automation.coordinator import StageTransitionCoordinator, TransitionResult, stage_transition_coordinator
from stageflow.automation.errors import (
    ActionDeliveryFailed,
    AutomationError,
    CollaboratorRejected,
    CollaboratorUnavailable,
    ConcurrentTransition,
    DeadLetterNotFound,
    InvalidStageForPipeline,
    PipelineConfigError,
    PipelineNotFound,
    RecordNotFound,
    RequiredFieldMissing,
    ScanTickFailed,
    TransitionError,
)
from stageflow.automation.executor import ActionExecutor, DrainSummary, action_executor
from stageflow.automation.firing_log import FiringLogStore, firing_log_store
from stageflow.automation.models import (
    ActionRequest,
    DeadLetterEntry,
    FiringLogEntry,
    PipelineRecord,
    PipelineTemplate,
    SchedulerLease,
    StageAutomation,
    StageDefinition,
)
from stageflow.automation.records import RecordRegistry, record_registry
from stageflow.automation.scheduler import DurationScanScheduler, duration_scan_scheduler

__all__ = [
    "pipelines_router",
    "records_router",
    "operations_router",
    "OrgPipelineContext",
    "PipelineTemplate",
    "StageDefinition",
    "StageAutomation",
    "PipelineRecord",
    "FiringLogEntry",
    "ActionRequest",
    "DeadLetterEntry",
    "SchedulerLease",
    "AutomationError",
    "PipelineConfigError",
    "PipelineNotFound",
    "TransitionError",
    "RecordNotFound",
    "InvalidStageForPipeline",
    "RequiredFieldMissing",
    "ConcurrentTransition",
    "ActionDeliveryFailed",
    "CollaboratorUnavailable",
    "CollaboratorRejected",
    "ScanTickFailed",
    "DeadLetterNotFound",
    "PipelineConfigStore",
    "pipeline_config_store",
    "FiringLogStore",
    "firing_log_store",
    "StageTransitionCoordinator",
    "TransitionResult",
    "stage_transition_coordinator",
    "DurationScanScheduler",
    "duration_scan_scheduler",
    "ActionExecutor",
    "DrainSummary",
    "action_executor",
    "RecordRegistry",
    "record_registry",
]
