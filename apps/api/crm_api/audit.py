from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from crm_api.context import get_correlation_id

# Snapshot keys whose dict values are diffed key by key.
NESTED_SNAPSHOT_KEYS = frozenset({"custom_fields"})

audit_entries: list[dict[str, Any]] = []


def _flatten(snapshot: dict[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in snapshot.items():
        if key in NESTED_SNAPSHOT_KEYS and isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flat[f"{key}.{nested_key}"] = nested_value
        else:
            flat[key] = value
    return flat


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    """List the snapshot keys that differ, using ``custom_fields.<key>`` for custom field changes.

    A creation (no ``before``) reports every populated key of ``after``.
    """
    if after is None:
        return []
    flat_after = _flatten(after)
    if before is None:
        return sorted(key for key, value in flat_after.items() if value is not None)
    flat_before = _flatten(before)
    keys = set(flat_before) | set(flat_after)
    return sorted(key for key in keys if flat_before.get(key) != flat_after.get(key))


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
        "changed_fields": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry
