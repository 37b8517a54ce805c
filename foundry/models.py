"""Pydantic models for the feature tree API."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from foundry.errors import ValidationError


class FeatureLevel(str, Enum):
    EPIC = "epic"
    FEATURE = "feature"
    SUB_FEATURE = "sub_feature"
    TASK = "task"


class FeatureStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"


# Fixed decomposition ladder: each level maps to the only level allowed beneath it.
CHILD_LEVEL: dict[FeatureLevel, FeatureLevel | None] = {
    FeatureLevel.EPIC: FeatureLevel.FEATURE,
    FeatureLevel.FEATURE: FeatureLevel.SUB_FEATURE,
    FeatureLevel.SUB_FEATURE: FeatureLevel.TASK,
    FeatureLevel.TASK: None,
}

ROOT_LEVEL = FeatureLevel.EPIC


def parse_level(value: str | FeatureLevel | None) -> FeatureLevel:
    """Coerce a raw level value into the closed level set."""
    try:
        return FeatureLevel(value)
    except ValueError:
        raise ValidationError(f"Invalid level: {value}") from None


def parse_status(value: str | FeatureStatus | None) -> FeatureStatus:
    """Coerce a raw status value into the closed status set."""
    try:
        return FeatureStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status value: {value}") from None


def expected_child_level(parent_level: FeatureLevel | None) -> FeatureLevel | None:
    """Level a child of ``parent_level`` must have; ``None`` parent means a root."""
    if parent_level is None:
        return ROOT_LEVEL
    return CHILD_LEVEL[parent_level]


# ── Node models ─────────────────────────────────────────────────────

class FeatureNode(BaseModel):
    id: str
    projectId: str
    parentId: Optional[str] = None
    title: str
    description: Optional[str] = None
    level: FeatureLevel
    status: FeatureStatus = FeatureStatus.NOT_STARTED
    position: int = Field(default=0, ge=0)
    deletedAt: Optional[str] = None
    createdBy: str = ""
    createdAt: str = ""
    updatedAt: str = ""
    originId: Optional[str] = None


class FeatureTreeNode(FeatureNode):
    children: list[FeatureTreeNode] = Field(default_factory=list)


def feature_node_from_row(row: dict) -> FeatureNode:
    """Build an API node from a repository row (snake_case columns)."""
    return FeatureNode(
        id=row["id"],
        projectId=row["project_id"],
        parentId=row.get("parent_id"),
        title=row["title"],
        description=row.get("description"),
        level=parse_level(row["level"]),
        status=parse_status(row["status"]),
        position=row.get("position") or 0,
        deletedAt=row.get("deleted_at"),
        createdBy=row.get("created_by") or "",
        createdAt=row.get("created_at") or "",
        updatedAt=row.get("updated_at") or "",
        originId=row.get("origin_id"),
    )


class CascadeEntry(BaseModel):
    nodeId: str
    oldStatus: FeatureStatus
    newStatus: FeatureStatus


class StatusUpdateResult(BaseModel):
    node: FeatureNode
    oldStatus: FeatureStatus
    cascadeLog: list[CascadeEntry] = Field(default_factory=list)


class MoveResult(BaseModel):
    node: FeatureNode
    cascadeLog: list[CascadeEntry] = Field(default_factory=list)


class NodeProgress(BaseModel):
    nodeId: str
    totalChildren: int = 0
    completeChildren: int = 0
    inProgressChildren: int = 0
    blockedChildren: int = 0
    notStartedChildren: int = 0
    completionPercent: int = 0
    statusBreakdown: dict[str, int] = Field(default_factory=dict)


# ── Bulk creation ───────────────────────────────────────────────────

class BulkNodeInput(BaseModel):
    tempId: str
    parentTempId: Optional[str] = None
    title: str
    description: Optional[str] = None
    level: str
    status: Optional[str] = None


class BulkCreateResult(BaseModel):
    createdCount: int
    nodeIds: list[str] = Field(default_factory=list)


# ── Search / stats ──────────────────────────────────────────────────

class SearchResult(BaseModel):
    matchingIds: list[str] = Field(default_factory=list)
    displayIds: list[str] = Field(default_factory=list)
    totalMatches: int = 0
    statusCounts: dict[str, int] = Field(default_factory=dict)
    levelCounts: dict[str, int] = Field(default_factory=dict)


class TreeStats(BaseModel):
    projectId: str
    totalNodes: int = 0
    epicCount: int = 0
    featureCount: int = 0
    subfeatureCount: int = 0
    taskCount: int = 0
    statusBreakdown: dict[str, int] = Field(default_factory=dict)
    completionPercent: int = 0
    inProgressPercent: int = 0
    blockedPercent: int = 0
    blockedNodeCount: int = 0


# ── Export ──────────────────────────────────────────────────────────

class ExportDocument(BaseModel):
    content: str
    mediaType: str
    filename: str
