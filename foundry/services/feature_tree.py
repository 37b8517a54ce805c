"""Feature tree node store: CRUD, ordering and tree assembly."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from foundry.errors import NotFoundError, ValidationError
from foundry.models import (
    CHILD_LEVEL,
    ExportDocument,
    FeatureLevel,
    FeatureNode,
    FeatureStatus,
    FeatureTreeNode,
    MoveResult,
    NodeProgress,
    expected_child_level,
    feature_node_from_row,
    parse_level,
    parse_status,
)
from foundry.observability import record_tree_io, start_span
from foundry.parsers.tree_export import export_tree as render_export, resolve_format
from foundry.services.status_cascade import StatusCascade
from foundry.services.tree_search import percent_of

logger = logging.getLogger("foundry.feature_tree")


def _clean_description(value: str | None) -> str | None:
    text = (value or "").strip()
    return text or None


def build_tree(rows: list[dict]) -> list[FeatureTreeNode]:
    """Assemble live rows into a forest with position-sorted children.

    Rows whose parent is not among ``rows`` (deleted or missing) are left out.
    """
    nodes: dict[str, FeatureTreeNode] = {}
    for row in rows:
        nodes[row["id"]] = FeatureTreeNode(**feature_node_from_row(row).model_dump())

    roots: list[FeatureTreeNode] = []
    for row in rows:
        node = nodes[row["id"]]
        parent_id = row.get("parent_id")
        if parent_id:
            parent = nodes.get(parent_id)
            if parent is not None:
                parent.children.append(node)
        else:
            roots.append(node)

    def _sort(siblings: list[FeatureTreeNode]) -> None:
        siblings.sort(key=lambda n: n.position)
        for sibling in siblings:
            if sibling.children:
                _sort(sibling.children)

    _sort(roots)
    return roots


class FeatureTreeService:
    """Node-level operations for one repository backend."""

    def __init__(self, repo: Any, cascade: StatusCascade | None = None):
        self.repo = repo
        self.cascade = cascade or StatusCascade(repo)

    async def _require(self, project_id: str, node_id: str) -> dict:
        row = await self.repo.get_by_id(project_id, node_id)
        if not row:
            raise NotFoundError(f"Feature node '{node_id}' not found")
        return row

    async def _next_position(self, project_id: str, parent_id: str | None) -> int:
        current = await self.repo.max_position(project_id, parent_id)
        return 0 if current is None else current + 1

    async def create_node(
        self,
        project_id: str,
        title: str,
        parent_id: str | None = None,
        description: str | None = None,
        created_by: str = "",
        origin_id: str | None = None,
    ) -> FeatureNode:
        clean_title = (title or "").strip()
        if not clean_title:
            raise ValidationError("title is required")

        parent_id = parent_id or None
        if parent_id:
            parent = await self.repo.get_by_id(project_id, parent_id)
            if not parent:
                raise NotFoundError(f"Parent node '{parent_id}' not found")
            level = CHILD_LEVEL[parse_level(parent["level"])]
            if level is None:
                raise ValidationError("Task nodes cannot have children")
        else:
            level = FeatureLevel.EPIC

        row = await self.repo.insert(
            {
                "parent_id": parent_id,
                "title": clean_title,
                "description": _clean_description(description),
                "level": level.value,
                "status": FeatureStatus.NOT_STARTED.value,
                "position": await self._next_position(project_id, parent_id),
                "created_by": created_by or "",
                "origin_id": origin_id,
            },
            project_id,
        )
        logger.info("Created %s node %s in project %s", level.value, row["id"], project_id)
        return feature_node_from_row(row)

    async def get_node(self, project_id: str, node_id: str) -> FeatureNode:
        return feature_node_from_row(await self._require(project_id, node_id))

    async def get_tree(self, project_id: str) -> list[FeatureTreeNode]:
        rows = await self.repo.list_all(project_id)
        return build_tree(rows)

    async def export_tree(
        self,
        project_id: str,
        fmt: str,
        include_descriptions: bool = True,
        project_name: str = "Project",
    ) -> ExportDocument:
        name = resolve_format(fmt)
        with start_span("feature_tree.export", {"project_id": project_id, "format": name}):
            nodes = await self.get_tree(project_id)
            document = render_export(nodes, name, include_descriptions, project_name)
        record_tree_io("export", name, "ok", project_id=project_id)
        return document

    async def update_node(self, project_id: str, node_id: str, changes: dict) -> FeatureNode:
        """Edit ``title`` and/or ``description``; keys absent from ``changes`` are left alone."""
        await self._require(project_id, node_id)

        fields: dict[str, Any] = {}
        if "title" in changes and changes["title"] is not None:
            clean_title = str(changes["title"]).strip()
            if not clean_title:
                raise ValidationError("title cannot be empty")
            fields["title"] = clean_title
        if "description" in changes:
            fields["description"] = _clean_description(changes["description"])
        if not fields:
            raise ValidationError("No fields to update")

        await self.repo.update_fields(node_id, fields)
        return await self.get_node(project_id, node_id)

    async def delete_node(self, project_id: str, node_id: str) -> None:
        """Soft delete. Children keep their rows and drop out of tree reads with it."""
        await self._require(project_id, node_id)
        await self.repo.set_deleted_at(node_id, datetime.now(timezone.utc).isoformat())
        logger.info("Soft-deleted node %s in project %s", node_id, project_id)

    async def restore_node(self, project_id: str, node_id: str) -> FeatureNode:
        """Clear ``deleted_at`` on a soft-deleted node. Descendants are not restored."""
        row = await self.repo.get_by_id(project_id, node_id, deleted=True)
        if not row:
            raise NotFoundError(f"Feature node '{node_id}' not found or not deleted")

        # A sibling may have taken this slot while the node was deleted.
        siblings = await self.repo.list_children(project_id, row.get("parent_id"))
        if any(s["position"] == row["position"] for s in siblings):
            position = max(s["position"] for s in siblings) + 1
            await self.repo.update_fields(node_id, {"position": position})

        await self.repo.set_deleted_at(node_id, None)
        logger.info("Restored node %s in project %s", node_id, project_id)
        return await self.get_node(project_id, node_id)

    async def _is_within_subtree(self, project_id: str, root_id: str, candidate_id: str) -> bool:
        current_id: str | None = candidate_id
        seen: set[str] = set()
        while current_id and current_id not in seen:
            if current_id == root_id:
                return True
            seen.add(current_id)
            row = await self.repo.get_by_id(project_id, current_id)
            if not row:
                break
            current_id = row.get("parent_id")
        return False

    async def _renumber(self, project_id: str, parent_id: str | None, ordered: list[dict] | None = None) -> None:
        if ordered is None:
            ordered = await self.repo.list_children(project_id, parent_id)
        await self.repo.set_positions(
            [(sibling["id"], idx) for idx, sibling in enumerate(ordered) if sibling["position"] != idx]
        )

    async def move_node(
        self,
        project_id: str,
        node_id: str,
        parent_id: str | None = None,
        position: int | None = None,
    ) -> MoveResult:
        """Reparent and/or reorder a node, renumbering siblings 0..n-1.

        Status is re-derived for the old and new parent chains when the
        parent changes.
        """
        row = await self._require(project_id, node_id)
        new_parent_id = parent_id or None
        old_parent_id = row.get("parent_id")

        if position is not None and position < 0:
            raise ValidationError("position must be a non-negative integer")
        if new_parent_id == node_id:
            raise ValidationError("Cannot move node into itself")

        parent_level: FeatureLevel | None = None
        if new_parent_id:
            parent = await self.repo.get_by_id(project_id, new_parent_id)
            if not parent:
                raise NotFoundError(f"Target parent '{new_parent_id}' not found")
            parent_level = parse_level(parent["level"])

        node_level = parse_level(row["level"])
        if expected_child_level(parent_level) != node_level:
            target = parent_level.value if parent_level else "root"
            raise ValidationError(f"Cannot place {node_level.value} under {target}")

        if new_parent_id and await self._is_within_subtree(project_id, node_id, new_parent_id):
            raise ValidationError("Cannot move node into its own subtree")

        if old_parent_id == new_parent_id and (position is None or row["position"] == position):
            return MoveResult(node=feature_node_from_row(row))

        siblings = await self.repo.list_children(project_id, new_parent_id)
        others = [s for s in siblings if s["id"] != node_id]
        insert_at = len(others) if position is None else min(position, len(others))

        await self.repo.update_fields(node_id, {"parent_id": new_parent_id, "position": insert_at})
        ordered = others[:insert_at] + [{**row, "position": insert_at}] + others[insert_at:]
        await self._renumber(project_id, new_parent_id, ordered)

        cascade_log = []
        if old_parent_id != new_parent_id:
            await self._renumber(project_id, old_parent_id)
            cascade_log.extend(await self.cascade.recompute_from(project_id, old_parent_id))
            cascade_log.extend(await self.cascade.recompute_from(project_id, new_parent_id))

        logger.info(
            "Moved node %s to parent=%s position=%s (project=%s)",
            node_id, new_parent_id, insert_at, project_id,
        )
        return MoveResult(node=await self.get_node(project_id, node_id), cascadeLog=cascade_log)

    async def get_node_progress(self, project_id: str, node_id: str) -> NodeProgress:
        await self._require(project_id, node_id)
        children = await self.repo.list_children(project_id, node_id)

        breakdown = {status.value: 0 for status in FeatureStatus}
        for child in children:
            breakdown[parse_status(child["status"]).value] += 1

        total = len(children)
        return NodeProgress(
            nodeId=node_id,
            totalChildren=total,
            completeChildren=breakdown[FeatureStatus.COMPLETE.value],
            inProgressChildren=breakdown[FeatureStatus.IN_PROGRESS.value],
            blockedChildren=breakdown[FeatureStatus.BLOCKED.value],
            notStartedChildren=breakdown[FeatureStatus.NOT_STARTED.value],
            completionPercent=percent_of(breakdown[FeatureStatus.COMPLETE.value], total),
            statusBreakdown=breakdown,
        )
