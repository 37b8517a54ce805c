"""Search, filtering and summary counts over a project's feature tree."""
from __future__ import annotations

from typing import Any, Iterable

from foundry.models import (
    FeatureLevel,
    FeatureStatus,
    SearchResult,
    TreeStats,
    parse_level,
    parse_status,
)


def percent_of(part: int, total: int) -> int:
    """Whole-number percentage, halves rounded up; 0 for an empty total."""
    if total <= 0:
        return 0
    return int(part * 100 / total + 0.5)


def _split_filter(values: Iterable[str] | str | None) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    return [str(v).strip() for v in values if str(v).strip()]


def _empty_counts() -> tuple[dict[str, int], dict[str, int]]:
    return (
        {status.value: 0 for status in FeatureStatus},
        {level.value: 0 for level in FeatureLevel},
    )


def search_rows(
    rows: list[dict],
    query: str | None = None,
    statuses: Iterable[str] | str | None = None,
    levels: Iterable[str] | str | None = None,
) -> SearchResult:
    """Match live rows and add the ancestors needed to render them in place.

    ``statusCounts``/``levelCounts`` always cover every row, whatever the filters.
    """
    status_filter = {parse_status(value) for value in _split_filter(statuses)}
    level_filter = {parse_level(value) for value in _split_filter(levels)}
    needle = (query or "").strip().lower()

    status_counts, level_counts = _empty_counts()
    parent_map: dict[str, str] = {}
    for row in rows:
        status_counts[parse_status(row["status"]).value] += 1
        level_counts[parse_level(row["level"]).value] += 1
        if row.get("parent_id"):
            parent_map[row["id"]] = row["parent_id"]

    matching: list[str] = []
    for row in rows:
        if needle:
            title_hit = needle in (row.get("title") or "").lower()
            desc_hit = needle in (row.get("description") or "").lower()
            if not (title_hit or desc_hit):
                continue
        if status_filter and parse_status(row["status"]) not in status_filter:
            continue
        if level_filter and parse_level(row["level"]) not in level_filter:
            continue
        matching.append(row["id"])

    display = set(matching)
    for node_id in matching:
        current = node_id
        while current in parent_map:
            current = parent_map[current]
            if current in display:
                break
            display.add(current)

    return SearchResult(
        matchingIds=matching,
        displayIds=[row["id"] for row in rows if row["id"] in display],
        totalMatches=len(matching),
        statusCounts=status_counts,
        levelCounts=level_counts,
    )


def compute_stats(project_id: str, rows: list[dict]) -> TreeStats:
    status_counts, level_counts = _empty_counts()
    for row in rows:
        status_counts[parse_status(row["status"]).value] += 1
        level_counts[parse_level(row["level"]).value] += 1

    total = len(rows)
    return TreeStats(
        projectId=project_id,
        totalNodes=total,
        epicCount=level_counts[FeatureLevel.EPIC.value],
        featureCount=level_counts[FeatureLevel.FEATURE.value],
        subfeatureCount=level_counts[FeatureLevel.SUB_FEATURE.value],
        taskCount=level_counts[FeatureLevel.TASK.value],
        statusBreakdown=status_counts,
        completionPercent=percent_of(status_counts[FeatureStatus.COMPLETE.value], total),
        inProgressPercent=percent_of(status_counts[FeatureStatus.IN_PROGRESS.value], total),
        blockedPercent=percent_of(status_counts[FeatureStatus.BLOCKED.value], total),
        blockedNodeCount=status_counts[FeatureStatus.BLOCKED.value],
    )


class TreeSearchService:
    def __init__(self, repo: Any):
        self.repo = repo

    async def search(
        self,
        project_id: str,
        query: str | None = None,
        statuses: Iterable[str] | str | None = None,
        levels: Iterable[str] | str | None = None,
    ) -> SearchResult:
        rows = await self.repo.list_all(project_id)
        return search_rows(rows, query, statuses, levels)

    async def get_stats(self, project_id: str) -> TreeStats:
        rows = await self.repo.list_all(project_id)
        return compute_stats(project_id, rows)
