"""Render a feature tree as JSON, YAML, Markdown outline or CSV."""
from __future__ import annotations

import csv
import io
import json
import re
from datetime import datetime, timezone
from typing import Iterator

import yaml

from foundry.errors import ValidationError
from foundry.models import ExportDocument, FeatureTreeNode

EXPORT_FORMATS = ("json", "yaml", "markdown", "csv")

_FORMAT_ALIASES = {
    "structured": "json",
    "yml": "yaml",
    "outline": "markdown",
    "outline-text": "markdown",
    "md": "markdown",
    "tabular": "csv",
}

_MEDIA_TYPES = {
    "json": ("application/json; charset=utf-8", "json"),
    "yaml": ("application/yaml; charset=utf-8", "yaml"),
    "markdown": ("text/markdown; charset=utf-8", "md"),
    "csv": ("text/csv; charset=utf-8", "csv"),
}

CSV_HEADERS = ["ID", "Title", "Level", "Status", "Parent ID", "Position", "Description"]

_LEVEL_LABELS = {
    "epic": "Epic",
    "feature": "Feature",
    "sub_feature": "Sub-feature",
    "task": "Task",
}


def resolve_format(fmt: str | None, allowed: tuple[str, ...] = EXPORT_FORMATS) -> str:
    """Normalize a format name or alias; reject anything outside ``allowed``."""
    name = (fmt or "").strip().lower()
    name = _FORMAT_ALIASES.get(name, name)
    if name not in allowed:
        raise ValidationError(f"Invalid format. Use: {', '.join(allowed)}")
    return name


def _walk(nodes: list[FeatureTreeNode], depth: int = 0) -> Iterator[tuple[FeatureTreeNode, int]]:
    """Pre-order traversal yielding ``(node, depth)``."""
    stack = [(node, depth) for node in reversed(nodes)]
    while stack:
        node, node_depth = stack.pop()
        yield node, node_depth
        stack.extend((child, node_depth + 1) for child in reversed(node.children))


def count_nodes(nodes: list[FeatureTreeNode]) -> int:
    return sum(1 for _ in _walk(nodes))


def _node_document(node: FeatureTreeNode, include_descriptions: bool) -> dict:
    result = {
        "id": node.id,
        "title": node.title,
        "level": node.level.value,
        "status": node.status.value,
        "position": node.position,
    }
    if include_descriptions and node.description:
        result["description"] = node.description
    result["children"] = [_node_document(child, include_descriptions) for child in node.children]
    return result


def build_tree_document(nodes: list[FeatureTreeNode], project_name: str, include_descriptions: bool = True) -> dict:
    return {
        "project": {"name": project_name},
        "tree": {
            "nodes": [_node_document(node, include_descriptions) for node in nodes],
            "metadata": {
                "totalNodes": count_nodes(nodes),
                "exportedAt": datetime.now(timezone.utc).isoformat(),
            },
        },
    }


def build_tree_markdown(nodes: list[FeatureTreeNode], project_name: str, include_descriptions: bool = True) -> str:
    lines = [f"# Feature Tree: {project_name}", ""]
    for node, depth in _walk(nodes):
        level_label = _LEVEL_LABELS.get(node.level.value, node.level.value)
        status_label = node.status.value.replace("_", " ")
        title = " ".join(node.title.split())
        line = f"{'  ' * depth}- [{level_label}] {title} ({status_label})"
        if include_descriptions and node.description:
            line += f": {' '.join(node.description.split())}"
        lines.append(line)
    return "\n".join(lines) + "\n"


def build_tree_csv(nodes: list[FeatureTreeNode], include_descriptions: bool = True) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for node, _depth in _walk(nodes):
        writer.writerow([
            node.id,
            node.title,
            node.level.value,
            node.status.value,
            node.parentId or "",
            node.position,
            (node.description or "") if include_descriptions else "",
        ])
    return buffer.getvalue()


def _safe_filename(project_name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_\- ]", "", project_name or "").strip() or "feature-tree"


def export_tree(
    nodes: list[FeatureTreeNode],
    fmt: str,
    include_descriptions: bool = True,
    project_name: str = "Project",
) -> ExportDocument:
    name = resolve_format(fmt)
    project_name = project_name or "Project"

    if name == "json":
        content = json.dumps(build_tree_document(nodes, project_name, include_descriptions), indent=2)
    elif name == "yaml":
        content = yaml.safe_dump(
            build_tree_document(nodes, project_name, include_descriptions),
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    elif name == "markdown":
        content = build_tree_markdown(nodes, project_name, include_descriptions)
    else:
        content = build_tree_csv(nodes, include_descriptions)

    media_type, extension = _MEDIA_TYPES[name]
    return ExportDocument(
        content=content,
        mediaType=media_type,
        filename=f"{_safe_filename(project_name)}_tree.{extension}",
    )
