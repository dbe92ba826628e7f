from __future__ import annotations

import uuid
from dataclasses import dataclass, replace


@dataclass(frozen=True, slots=True)
class OrgPipelineContext:
    """Organization and pipeline scope handed to every coordinator and scheduler call."""

    organization_id: str
    pipeline_id: uuid.UUID | None = None
    actor_user_id: str = "system"
    correlation_id: str | None = None

    def for_pipeline(self, pipeline_id: uuid.UUID) -> OrgPipelineContext:
        return replace(self, pipeline_id=pipeline_id)
