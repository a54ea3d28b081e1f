"""Audit trail for lead, sale and identity mutations.

Every entry goes to the ``leadledger.audit`` logger, which the JSON handler
ships with the correlation id. The newest entries also stay in a bounded
in-process buffer so a running process can inspect recent activity.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from leadledger.context import get_correlation_id
from leadledger.core.config import get_settings

logger = logging.getLogger("leadledger.audit")

audit_entries: deque[dict[str, Any]] = deque(maxlen=get_settings().audit_buffer_size)


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return sorted((before or after or {}).keys())
    return sorted(key for key in set(before) | set(after) if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)

    # Field values stay out of the log line; only the names of what changed.
    logger.info(
        "audit.recorded",
        extra={
            "audit_id": entry["id"],
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "changed_fields": _changed_fields(before, after),
        },
    )
    return entry
