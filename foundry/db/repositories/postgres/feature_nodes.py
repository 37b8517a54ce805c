"""PostgreSQL implementation of FeatureNodeRepository."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

import asyncpg

_COLUMNS = (
    "id, project_id, parent_id, title, description, level, status, position, "
    "deleted_at, created_by, created_at, updated_at, origin_id"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _affected(status_line: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    try:
        return int(status_line.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresFeatureNodeRepository:
    """PostgreSQL-backed feature tree storage."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get_by_id(self, project_id: str, node_id: str, *, deleted: bool | None = False) -> dict | None:
        query = f"SELECT {_COLUMNS} FROM feature_nodes WHERE id = $1 AND project_id = $2"
        if deleted is True:
            query += " AND deleted_at IS NOT NULL"
        elif deleted is False:
            query += " AND deleted_at IS NULL"
        row = await self.db.fetchrow(query, node_id, project_id)
        return dict(row) if row else None

    async def list_all(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            f"""SELECT {_COLUMNS} FROM feature_nodes
                WHERE project_id = $1 AND deleted_at IS NULL
                ORDER BY position, created_at""",
            project_id,
        )
        return [dict(r) for r in rows]

    async def list_children(self, project_id: str, parent_id: str | None) -> list[dict]:
        rows = await self.db.fetch(
            f"""SELECT {_COLUMNS} FROM feature_nodes
                WHERE project_id = $1 AND parent_id IS NOT DISTINCT FROM $2 AND deleted_at IS NULL
                ORDER BY position, created_at""",
            project_id,
            parent_id,
        )
        return [dict(r) for r in rows]

    async def max_position(self, project_id: str, parent_id: str | None) -> int | None:
        return await self.db.fetchval(
            """SELECT MAX(position) FROM feature_nodes
               WHERE project_id = $1 AND parent_id IS NOT DISTINCT FROM $2 AND deleted_at IS NULL""",
            project_id,
            parent_id,
        )

    async def insert(self, node_data: dict, project_id: str) -> dict:
        now = _now()
        row = {
            "id": node_data.get("id") or str(uuid.uuid4()),
            "project_id": project_id,
            "parent_id": node_data.get("parent_id"),
            "title": node_data["title"],
            "description": node_data.get("description"),
            "level": node_data["level"],
            "status": node_data.get("status", "not_started"),
            "position": node_data.get("position", 0),
            "deleted_at": None,
            "created_by": node_data.get("created_by", ""),
            "created_at": now,
            "updated_at": now,
            "origin_id": node_data.get("origin_id"),
        }
        await self.db.execute(
            f"""INSERT INTO feature_nodes ({_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)""",
            *row.values(),
        )
        return row

    async def update_fields(self, node_id: str, fields: dict) -> None:
        allowed = [name for name in fields if name in {"title", "description", "parent_id", "position"}]
        if not allowed:
            return
        assignments = [f"{name} = ${idx}" for idx, name in enumerate(allowed, start=1)]
        values = [fields[name] for name in allowed]
        ts_idx = len(values) + 1
        await self.db.execute(
            f"UPDATE feature_nodes SET {', '.join(assignments)}, updated_at = ${ts_idx} WHERE id = ${ts_idx + 1}",
            *values,
            _now(),
            node_id,
        )

    async def update_status(self, node_id: str, status: str, expected_status: str | None = None) -> bool:
        if expected_status is None:
            result = await self.db.execute(
                "UPDATE feature_nodes SET status = $1, updated_at = $2 WHERE id = $3",
                status, _now(), node_id,
            )
        else:
            result = await self.db.execute(
                "UPDATE feature_nodes SET status = $1, updated_at = $2 WHERE id = $3 AND status = $4",
                status, _now(), node_id, expected_status,
            )
        return _affected(result) > 0

    async def set_deleted_at(self, node_id: str, deleted_at: str | None) -> None:
        await self.db.execute(
            "UPDATE feature_nodes SET deleted_at = $1, updated_at = $2 WHERE id = $3",
            deleted_at, _now(), node_id,
        )

    async def set_positions(self, positions: list[tuple[str, int]]) -> None:
        if not positions:
            return
        now = _now()
        await self.db.executemany(
            "UPDATE feature_nodes SET position = $1, updated_at = $2 WHERE id = $3",
            [(position, now, node_id) for node_id, position in positions],
        )
