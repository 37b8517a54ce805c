"""Status rollup from children to ancestors.

A parent's status is derived from its direct, non-deleted children:

1. no children                      -> not_started
2. every child complete             -> complete
3. any child blocked                -> blocked
4. any child in_progress / complete -> in_progress
5. otherwise                        -> not_started

Ancestor writes are compare-and-swap on the status read just before the
recompute, so two cascades racing on a shared parent cannot silently
overwrite each other: the loser re-reads and recomputes.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable

from foundry import config
from foundry.errors import CascadeError, NotFoundError
from foundry.models import (
    CascadeEntry,
    FeatureStatus,
    StatusUpdateResult,
    feature_node_from_row,
    parse_status,
)
from foundry.observability import record_cascade, start_span

logger = logging.getLogger("foundry.cascade")


def aggregate_status(child_statuses: Iterable[str | FeatureStatus]) -> FeatureStatus:
    statuses = [parse_status(s) for s in child_statuses]
    if not statuses:
        return FeatureStatus.NOT_STARTED
    if all(s is FeatureStatus.COMPLETE for s in statuses):
        return FeatureStatus.COMPLETE
    if any(s is FeatureStatus.BLOCKED for s in statuses):
        return FeatureStatus.BLOCKED
    if any(s in (FeatureStatus.IN_PROGRESS, FeatureStatus.COMPLETE) for s in statuses):
        return FeatureStatus.IN_PROGRESS
    return FeatureStatus.NOT_STARTED


class StatusCascade:
    """Applies status changes and propagates the derived status upward."""

    def __init__(self, repo: Any, max_retries: int | None = None):
        self.repo = repo
        self.max_retries = config.CASCADE_MAX_RETRIES if max_retries is None else max(0, max_retries)

    async def update_status(self, project_id: str, node_id: str, status: str | FeatureStatus) -> StatusUpdateResult:
        new_status = parse_status(status)
        row = await self.repo.get_by_id(project_id, node_id)
        if not row:
            raise NotFoundError(f"Feature node '{node_id}' not found")

        old_status = parse_status(row["status"])
        if old_status == new_status:
            return StatusUpdateResult(node=feature_node_from_row(row), oldStatus=old_status)

        await self.repo.update_status(node_id, new_status.value)
        cascade_log = await self.recompute_from(project_id, row.get("parent_id"))

        updated = await self.repo.get_by_id(project_id, node_id)
        node = feature_node_from_row(updated) if updated else feature_node_from_row({**row, "status": new_status.value})
        return StatusUpdateResult(node=node, oldStatus=old_status, cascadeLog=cascade_log)

    async def recompute_from(self, project_id: str, ancestor_id: str | None) -> list[CascadeEntry]:
        """Recompute ``ancestor_id`` from its children, then walk upward while statuses change."""
        cascade_log: list[CascadeEntry] = []
        if not ancestor_id:
            return cascade_log

        with start_span("feature_tree.cascade", {"project_id": project_id, "start_node_id": ancestor_id}):
            current_id: str | None = ancestor_id
            try:
                while current_id:
                    entry, parent_id = await self._settle(project_id, current_id, cascade_log)
                    if entry is None:
                        break
                    cascade_log.append(entry)
                    current_id = parent_id
            except CascadeError:
                record_cascade(len(cascade_log), "error", project_id=project_id)
                raise

        record_cascade(len(cascade_log), "ok", project_id=project_id)
        return cascade_log

    async def _settle(
        self,
        project_id: str,
        node_id: str,
        cascade_log: list[CascadeEntry],
    ) -> tuple[CascadeEntry | None, str | None]:
        """Bring one ancestor in line with its children.

        Returns the log entry and the next ancestor id, or ``(None, None)``
        when the stored status already matches and the walk should stop.
        """
        for attempt in range(self.max_retries + 1):
            ancestor = await self.repo.get_by_id(project_id, node_id)
            if not ancestor:
                # Deleted mid-walk; nothing above it is reachable from here.
                return None, None
            children = await self.repo.list_children(project_id, node_id)
            derived = aggregate_status(child["status"] for child in children)
            stored = parse_status(ancestor["status"])
            if derived == stored:
                return None, None

            try:
                swapped = await self.repo.update_status(node_id, derived.value, expected_status=stored.value)
            except Exception as exc:
                logger.error("Cascade write failed at %s (project=%s): %s", node_id, project_id, exc)
                raise CascadeError(node_id, str(exc), cascade_log) from exc

            if swapped:
                logger.debug("Cascade %s: %s -> %s", node_id, stored.value, derived.value)
                return (
                    CascadeEntry(nodeId=node_id, oldStatus=stored, newStatus=derived),
                    ancestor.get("parent_id"),
                )
            logger.info("Concurrent status change on %s, retrying cascade (attempt %s)", node_id, attempt + 1)

        raise CascadeError(node_id, "status kept changing underneath the cascade", cascade_log)
