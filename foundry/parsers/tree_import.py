"""Parse exported feature trees back into bulk-create entries.

The result is a preview: nothing is persisted until the caller confirms it
through bulk creation.
"""
from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any

import yaml

from foundry import config
from foundry.errors import ValidationError
from foundry.models import BulkNodeInput, FeatureLevel, FeatureStatus
from foundry.parsers.tree_export import resolve_format

logger = logging.getLogger("foundry.import")

IMPORT_FORMATS = ("json", "yaml", "csv")

_LEVEL_SYNONYMS = {
    "subfeature": FeatureLevel.SUB_FEATURE.value,
    "sub": FeatureLevel.SUB_FEATURE.value,
}


def normalize_level(raw: Any) -> str:
    token = str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    token = _LEVEL_SYNONYMS.get(token, token)
    try:
        return FeatureLevel(token).value
    except ValueError:
        raise ValidationError(f"Unknown level in import: {raw!r}") from None


def normalize_status(raw: Any) -> str | None:
    token = str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return FeatureStatus(token).value
    except ValueError:
        return None


def _clean_title(raw: Any) -> str:
    return str(raw or "").strip() or "Untitled"


def _clean_description(raw: Any) -> str | None:
    if raw is None:
        return None
    return str(raw).strip() or None


def _tree_nodes(parsed: Any) -> list:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        tree = parsed.get("tree")
        if isinstance(tree, dict) and isinstance(tree.get("nodes"), list):
            return tree["nodes"]
        if isinstance(parsed.get("nodes"), list):
            return parsed["nodes"]
    raise ValidationError('Invalid tree document: expected "tree.nodes" array or root array')


def _walk_structured(tree_nodes: list, limit: int) -> list[BulkNodeInput]:
    """Flatten nested nodes in pre-order, stopping as soon as ``limit`` is exceeded.

    YAML aliases can share or nest the same mapping, so each entry carries the
    ids of the objects on its ancestor path.
    """
    nodes: list[BulkNodeInput] = []
    stack: list[tuple[Any, str | None, frozenset[int]]] = [
        (item, None, frozenset()) for item in reversed(tree_nodes)
    ]
    while stack:
        item, parent_temp_id, ancestors = stack.pop()
        if not isinstance(item, dict):
            raise ValidationError("Invalid tree document: every node must be an object")
        if id(item) in ancestors:
            raise ValidationError("Invalid tree document: a node cannot contain itself")
        if len(nodes) >= limit:
            raise ValidationError(f"Maximum {limit} nodes per import")

        temp_id = f"import-{len(nodes)}"
        nodes.append(BulkNodeInput(
            tempId=temp_id,
            parentTempId=parent_temp_id,
            title=_clean_title(item.get("title")),
            description=_clean_description(item.get("description")),
            level=normalize_level(item.get("level")),
            status=normalize_status(item.get("status")),
        ))

        children = item.get("children") or []
        if not isinstance(children, list):
            raise ValidationError(f'Invalid tree document: "children" of "{nodes[-1].title}" must be an array')
        path = ancestors | {id(item)}
        stack.extend((child, temp_id, path) for child in reversed(children))
    return nodes


def parse_tree_json(content: str, limit: int) -> list[BulkNodeInput]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON: {exc.msg} (line {exc.lineno})") from exc
    return _walk_structured(_tree_nodes(parsed), limit)


def parse_tree_yaml(content: str, limit: int) -> list[BulkNodeInput]:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ValidationError("Invalid YAML tree document") from exc
    return _walk_structured(_tree_nodes(parsed), limit)


def parse_tree_csv(content: str, limit: int | None = None) -> list[BulkNodeInput]:
    """Parse CSV with at least ``Title`` and ``Level`` columns.

    ``Parent ID`` values are matched against other rows' ``ID`` column
    anywhere in the file; unmatched parents make the row a root.
    """
    try:
        rows = [row for row in csv.reader(io.StringIO(content.strip())) if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        raise ValidationError(f"Invalid CSV: {exc}") from exc
    if len(rows) < 2:
        raise ValidationError("CSV must have a header row and at least one data row")

    header = [cell.strip().lower().replace("_", " ") for cell in rows[0]]

    def column(name: str) -> int:
        return header.index(name) if name in header else -1

    title_idx, level_idx = column("title"), column("level")
    if title_idx == -1 or level_idx == -1:
        raise ValidationError('CSV must have "Title" and "Level" columns')
    id_idx, parent_idx = column("id"), column("parent id")
    status_idx, desc_idx, pos_idx = column("status"), column("description"), column("position")

    def cell(cols: list[str], idx: int) -> str:
        return cols[idx].strip() if 0 <= idx < len(cols) else ""

    records = []
    id_to_temp: dict[str, str] = {}
    for cols in rows[1:]:
        if len(cols) <= max(title_idx, level_idx):
            continue
        if limit is not None and len(records) >= limit:
            raise ValidationError(f"Maximum {limit} nodes per import")
        temp_id = f"csv-{len(records)}"
        original_id = cell(cols, id_idx)
        if original_id:
            id_to_temp[original_id] = temp_id
        records.append((temp_id, cols))

    nodes: list[BulkNodeInput] = []
    positions: list[int] = []
    for temp_id, cols in records:
        parent_ref = cell(cols, parent_idx)
        nodes.append(BulkNodeInput(
            tempId=temp_id,
            parentTempId=id_to_temp.get(parent_ref) if parent_ref else None,
            title=_clean_title(cell(cols, title_idx)),
            description=_clean_description(cell(cols, desc_idx)),
            level=normalize_level(cell(cols, level_idx)),
            status=normalize_status(cell(cols, status_idx)),
        ))
        raw_position = cell(cols, pos_idx)
        positions.append(int(raw_position) if raw_position.isdigit() else len(positions))

    # Bulk creation keeps batch order within a parent, so order by the exported position.
    if pos_idx != -1:
        order = sorted(range(len(nodes)), key=lambda i: positions[i])
        nodes = [nodes[i] for i in order]
    return nodes


_PARSERS = {
    "json": parse_tree_json,
    "yaml": parse_tree_yaml,
    "csv": parse_tree_csv,
}


def import_tree(content: str, fmt: str, max_nodes: int | None = None) -> list[BulkNodeInput]:
    """Parse ``content`` into a bulk-create preview."""
    if not content or not isinstance(content, str) or not content.strip():
        raise ValidationError("content is required")
    name = resolve_format(fmt, IMPORT_FORMATS)
    limit = config.IMPORT_MAX_NODES if max_nodes is None else max_nodes

    nodes = _PARSERS[name](content, limit)
    if not nodes:
        raise ValidationError("No nodes found in file")
    if len(nodes) > limit:
        raise ValidationError(f"Maximum {limit} nodes per import")

    logger.info("Parsed %s nodes from %s import", len(nodes), name)
    return nodes
