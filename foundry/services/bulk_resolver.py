"""Bulk creation of placeholder-linked feature nodes.

Callers (tree generators, file imports) describe a subtree with their own
``tempId``/``parentTempId`` references. Entries are inserted breadth-first
from the roots so every parent's real id exists before its children are
written, whatever order the batch arrives in.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from foundry import config
from foundry.errors import BulkCreateError, ValidationError
from foundry.models import (
    BulkCreateResult,
    BulkNodeInput,
    FeatureStatus,
    expected_child_level,
    parse_level,
    parse_status,
)
from foundry.observability import record_bulk_create, start_span

logger = logging.getLogger("foundry.bulk")


def _coerce_entries(nodes: list[Any]) -> list[BulkNodeInput]:
    entries = []
    for raw in nodes:
        if isinstance(raw, BulkNodeInput):
            entries.append(raw)
            continue
        try:
            entries.append(BulkNodeInput.model_validate(raw))
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid node entry: {exc.errors()[0].get('msg', 'malformed')}") from exc
    return entries


def validate_batch(nodes: list[Any], max_nodes: int | None = None) -> list[dict]:
    """Check a whole batch before anything is written.

    Returns normalized entries (stripped text, parsed level/status,
    ``parentTempId`` of ``None`` for roots) in input order.
    """
    limit = config.BULK_MAX_NODES if max_nodes is None else max_nodes
    if not nodes:
        raise ValidationError("nodes array is required and must not be empty")
    if len(nodes) > limit:
        raise ValidationError(f"Maximum {limit} nodes per batch")

    normalized: list[dict] = []
    seen: set[str] = set()
    for entry in _coerce_entries(nodes):
        temp_id = (entry.tempId or "").strip()
        title = (entry.title or "").strip()
        if not temp_id or not title:
            raise ValidationError("Each node must have tempId and title")
        if temp_id in seen:
            raise ValidationError(f'Duplicate tempId "{temp_id}" in batch')
        seen.add(temp_id)
        normalized.append({
            "tempId": temp_id,
            "parentTempId": (entry.parentTempId or "").strip() or None,
            "title": title,
            "description": (entry.description or "").strip() or None,
            "level": parse_level(entry.level),
            "status": parse_status(entry.status) if entry.status else FeatureStatus.NOT_STARTED,
        })

    levels = {item["tempId"]: item["level"] for item in normalized}
    for item in normalized:
        parent_temp_id = item["parentTempId"]
        if parent_temp_id is not None and parent_temp_id not in levels:
            raise ValidationError(f'Parent tempId "{parent_temp_id}" not found in batch')
        parent_level = levels[parent_temp_id] if parent_temp_id is not None else None
        if expected_child_level(parent_level) != item["level"]:
            target = parent_level.value if parent_level else "root"
            raise ValidationError(
                f"Node \"{item['title']}\" cannot be a {item['level'].value} under {target}"
            )
    return normalized


class BulkResolver:
    """Turns a validated batch into persisted nodes."""

    def __init__(self, repo: Any, max_nodes: int | None = None):
        self.repo = repo
        self.max_nodes = max_nodes

    async def bulk_create(self, project_id: str, nodes: list[Any], created_by: str = "") -> BulkCreateResult:
        entries = validate_batch(nodes, self.max_nodes)

        children_map: dict[str | None, list[dict]] = {}
        for entry in entries:
            children_map.setdefault(entry["parentTempId"], []).append(entry)

        current_max = await self.repo.max_position(project_id, None)
        position_counters: dict[str | None, int] = {None: 0 if current_max is None else current_max + 1}
        temp_to_real: dict[str, str] = {}
        node_ids: list[str] = []
        queue: deque[str | None] = deque([None])

        with start_span("feature_tree.bulk_create", {"project_id": project_id, "batch_size": len(entries)}):
            while queue:
                parent_key = queue.popleft()
                for entry in children_map.get(parent_key, []):
                    real_parent_id = temp_to_real[parent_key] if parent_key is not None else None
                    position = position_counters.get(parent_key, 0)
                    position_counters[parent_key] = position + 1

                    try:
                        inserted = await self.repo.insert(
                            {
                                "parent_id": real_parent_id,
                                "title": entry["title"],
                                "description": entry["description"],
                                "level": entry["level"].value,
                                "status": entry["status"].value,
                                "position": position,
                                "created_by": created_by or "",
                            },
                            project_id,
                        )
                    except Exception as exc:
                        logger.error(
                            "Bulk create stopped at '%s' after %s nodes (project=%s): %s",
                            entry["title"], len(node_ids), project_id, exc,
                        )
                        record_bulk_create(len(node_ids), "partial", project_id=project_id)
                        raise BulkCreateError(len(node_ids), entry["title"], node_ids) from exc

                    temp_to_real[entry["tempId"]] = inserted["id"]
                    node_ids.append(inserted["id"])

                    if entry["tempId"] in children_map:
                        queue.append(entry["tempId"])
                        position_counters[entry["tempId"]] = 0

        logger.info("Bulk created %s nodes in project %s", len(node_ids), project_id)
        record_bulk_create(len(node_ids), "ok", project_id=project_id)
        return BulkCreateResult(createdCount=len(node_ids), nodeIds=node_ids)
