from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from stageflow.context import get_correlation_id, get_organization_id

audit_entries: list[dict[str, Any]] = []


def record(
    *,
    actor_user_id: str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    organization_id: str | None = None,
) -> dict[str, Any]:
    """Append an audit entry, falling back to the request context for correlation and organization."""
    entry = {
        "id": str(uuid.uuid4()),
        "organization_id": organization_id or get_organization_id(),
        "actor_user_id": actor_user_id or "system",
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [item for item in audit_entries if item["entity_type"] == entity_type and item["entity_id"] == entity_id]
