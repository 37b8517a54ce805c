"""Feature tree API router.

Membership/authorization is enforced upstream; handlers only scope by project.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel, Field

from foundry.db import connection
from foundry.db.factory import get_feature_node_repository
from foundry.errors import BulkCreateError, CascadeError, NotFoundError, ValidationError
from foundry.models import (
    BulkCreateResult,
    BulkNodeInput,
    FeatureNode,
    FeatureTreeNode,
    MoveResult,
    NodeProgress,
    SearchResult,
    StatusUpdateResult,
    TreeStats,
)
from foundry.observability import record_tree_io, start_span
from foundry.parsers.tree_import import import_tree
from foundry.services.bulk_resolver import BulkResolver
from foundry.services.feature_tree import FeatureTreeService
from foundry.services.status_cascade import StatusCascade
from foundry.services.tree_search import TreeSearchService

feature_nodes_router = APIRouter(prefix="/api/projects/{project_id}", tags=["feature-tree"])
logger = logging.getLogger("foundry.feature_tree")


# ── Request models ──────────────────────────────────────────────────

class CreateNodeRequest(BaseModel):
    title: str = ""
    description: Optional[str] = None
    parentId: Optional[str] = None
    originId: Optional[str] = None
    createdBy: str = ""


class UpdateNodeRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str  # not_started | in_progress | complete | blocked


class MoveNodeRequest(BaseModel):
    parentId: Optional[str] = None
    position: Optional[int] = None


class BulkCreateRequest(BaseModel):
    nodes: list[BulkNodeInput] = Field(default_factory=list)
    createdBy: str = ""


class ExportRequest(BaseModel):
    format: str = "json"
    includeDescriptions: bool = True
    projectName: str = "Project"


class ImportRequest(BaseModel):
    content: str = ""
    format: str = ""


# ── Response models ─────────────────────────────────────────────────

class FeatureTreeResponse(BaseModel):
    nodes: list[FeatureTreeNode] = Field(default_factory=list)
    count: int = 0


class ImportPreviewResponse(BaseModel):
    preview: list[BulkNodeInput] = Field(default_factory=list)
    count: int = 0


# ── Helpers ─────────────────────────────────────────────────────────

async def _get_repo() -> Any:
    db = await connection.get_connection()
    return get_feature_node_repository(db)


@contextmanager
def _translate_errors():
    """Map engine errors onto HTTP responses."""
    try:
        yield
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BulkCreateError as e:
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to insert node", "detail": e.failed_title, "created": e.created_count},
        )
    except CascadeError as e:
        raise HTTPException(
            status_code=500,
            detail={
                "error": str(e),
                "nodeId": e.node_id,
                "cascadeLog": [entry.model_dump(mode="json") for entry in e.cascade_log],
            },
        )


# ── Tree reads ──────────────────────────────────────────────────────

@feature_nodes_router.get("/feature-tree", response_model=FeatureTreeResponse)
async def get_feature_tree(project_id: str):
    """Return the live forest, children sorted by position."""
    service = FeatureTreeService(await _get_repo())
    nodes = await service.get_tree(project_id)
    total = 0
    stack = list(nodes)
    while stack:
        node = stack.pop()
        total += 1
        stack.extend(node.children)
    return FeatureTreeResponse(nodes=nodes, count=total)


@feature_nodes_router.get("/feature-nodes/search", response_model=SearchResult)
async def search_feature_nodes(project_id: str, q: str = "", statuses: str = "", levels: str = ""):
    """Search and filter nodes; returns matches plus the ancestors needed to display them."""
    service = TreeSearchService(await _get_repo())
    with _translate_errors():
        return await service.search(project_id, q, statuses, levels)


@feature_nodes_router.get("/feature-nodes/stats", response_model=TreeStats)
async def get_feature_stats(project_id: str):
    service = TreeSearchService(await _get_repo())
    return await service.get_stats(project_id)


# ── Bulk / import / export ──────────────────────────────────────────

@feature_nodes_router.post("/feature-nodes/bulk-create", response_model=BulkCreateResult, status_code=201)
async def bulk_create_feature_nodes(project_id: str, req: BulkCreateRequest):
    """Insert a placeholder-linked batch (tree generation output or a confirmed import)."""
    resolver = BulkResolver(await _get_repo())
    with _translate_errors():
        return await resolver.bulk_create(project_id, req.nodes, created_by=req.createdBy)


@feature_nodes_router.post("/feature-nodes/export")
async def export_feature_tree(project_id: str, req: ExportRequest):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        document = await service.export_tree(
            project_id,
            req.format,
            include_descriptions=req.includeDescriptions,
            project_name=req.projectName,
        )
    return Response(
        content=document.content,
        media_type=document.mediaType,
        headers={"Content-Disposition": f'attachment; filename="{document.filename}"'},
    )


@feature_nodes_router.post("/feature-nodes/import", response_model=ImportPreviewResponse)
async def import_feature_tree(project_id: str, req: ImportRequest):
    """Parse an uploaded tree for preview. Nothing is written until bulk-create."""
    with start_span("feature_tree.import", {"project_id": project_id, "format": req.format}):
        try:
            with _translate_errors():
                nodes = import_tree(req.content, req.format)
        except HTTPException:
            record_tree_io("import", req.format, "error", project_id=project_id)
            raise
    record_tree_io("import", req.format, "ok", project_id=project_id)
    return ImportPreviewResponse(preview=nodes, count=len(nodes))


# ── Node CRUD ───────────────────────────────────────────────────────

@feature_nodes_router.post("/feature-nodes", response_model=FeatureNode, status_code=201)
async def create_feature_node(project_id: str, req: CreateNodeRequest):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        return await service.create_node(
            project_id,
            req.title,
            parent_id=req.parentId,
            description=req.description,
            created_by=req.createdBy,
            origin_id=req.originId,
        )


@feature_nodes_router.get("/feature-nodes/{node_id}", response_model=FeatureNode)
async def get_feature_node(project_id: str, node_id: str):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        return await service.get_node(project_id, node_id)


@feature_nodes_router.patch("/feature-nodes/{node_id}", response_model=FeatureNode)
async def update_feature_node(project_id: str, node_id: str, req: UpdateNodeRequest):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        return await service.update_node(project_id, node_id, req.model_dump(exclude_unset=True))


@feature_nodes_router.delete("/feature-nodes/{node_id}")
async def delete_feature_node(project_id: str, node_id: str):
    """Soft delete; the node stays restorable."""
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        await service.delete_node(project_id, node_id)
    return {"success": True}


@feature_nodes_router.post("/feature-nodes/{node_id}/restore", response_model=FeatureNode)
async def restore_feature_node(project_id: str, node_id: str):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        return await service.restore_node(project_id, node_id)


@feature_nodes_router.put("/feature-nodes/{node_id}/status", response_model=StatusUpdateResult)
async def update_feature_node_status(project_id: str, node_id: str, req: StatusUpdateRequest):
    """Set a node's status and roll the change up through its ancestors."""
    cascade = StatusCascade(await _get_repo())
    with _translate_errors():
        return await cascade.update_status(project_id, node_id, req.status)


@feature_nodes_router.put("/feature-nodes/{node_id}/move", response_model=MoveResult)
async def move_feature_node(project_id: str, node_id: str, req: MoveNodeRequest):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        return await service.move_node(project_id, node_id, parent_id=req.parentId, position=req.position)


@feature_nodes_router.get("/feature-nodes/{node_id}/progress", response_model=NodeProgress)
async def get_feature_node_progress(project_id: str, node_id: str):
    service = FeatureTreeService(await _get_repo())
    with _translate_errors():
        return await service.get_node_progress(project_id, node_id)
