"""SQLite implementation of FeatureNodeRepository."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

import aiosqlite

_COLUMNS = (
    "id, project_id, parent_id, title, description, level, status, position, "
    "deleted_at, created_by, created_at, updated_at, origin_id"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteFeatureNodeRepository:
    """SQLite-backed feature tree storage.

    Rows come back as plain dicts with snake_case keys. Reads exclude
    soft-deleted rows unless stated otherwise.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_by_id(self, project_id: str, node_id: str, *, deleted: bool | None = False) -> dict | None:
        """Fetch a node in ``project_id``.

        ``deleted=False`` returns live rows only, ``True`` soft-deleted rows
        only and ``None`` either.
        """
        query = f"SELECT {_COLUMNS} FROM feature_nodes WHERE id = ? AND project_id = ?"
        if deleted is True:
            query += " AND deleted_at IS NOT NULL"
        elif deleted is False:
            query += " AND deleted_at IS NULL"
        async with self.db.execute(query, (node_id, project_id)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self, project_id: str) -> list[dict]:
        async with self.db.execute(
            f"""SELECT {_COLUMNS} FROM feature_nodes
                WHERE project_id = ? AND deleted_at IS NULL
                ORDER BY position, created_at""",
            (project_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_children(self, project_id: str, parent_id: str | None) -> list[dict]:
        async with self.db.execute(
            f"""SELECT {_COLUMNS} FROM feature_nodes
                WHERE project_id = ? AND parent_id IS ? AND deleted_at IS NULL
                ORDER BY position, created_at""",
            (project_id, parent_id),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def max_position(self, project_id: str, parent_id: str | None) -> int | None:
        """Highest position among live siblings, or None when there are none."""
        async with self.db.execute(
            """SELECT MAX(position) FROM feature_nodes
               WHERE project_id = ? AND parent_id IS ? AND deleted_at IS NULL""",
            (project_id, parent_id),
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row and row[0] is not None else None

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
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            tuple(row.values()),
        )
        await self.db.commit()
        return row

    async def update_fields(self, node_id: str, fields: dict) -> None:
        """Write ``title``/``description``/``parent_id``/``position`` columns."""
        allowed = {"title", "description", "parent_id", "position"}
        assignments = [f"{name} = ?" for name in fields if name in allowed]
        if not assignments:
            return
        values = [fields[name] for name in fields if name in allowed]
        await self.db.execute(
            f"UPDATE feature_nodes SET {', '.join(assignments)}, updated_at = ? WHERE id = ?",
            (*values, _now(), node_id),
        )
        await self.db.commit()

    async def update_status(self, node_id: str, status: str, expected_status: str | None = None) -> bool:
        """Set a node's status.

        With ``expected_status`` the write only lands if the stored status
        still equals it; returns whether a row was updated.
        """
        if expected_status is None:
            cur = await self.db.execute(
                "UPDATE feature_nodes SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), node_id),
            )
        else:
            cur = await self.db.execute(
                "UPDATE feature_nodes SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (status, _now(), node_id, expected_status),
            )
        updated = cur.rowcount > 0
        await cur.close()
        await self.db.commit()
        return updated

    async def set_deleted_at(self, node_id: str, deleted_at: str | None) -> None:
        await self.db.execute(
            "UPDATE feature_nodes SET deleted_at = ?, updated_at = ? WHERE id = ?",
            (deleted_at, _now(), node_id),
        )
        await self.db.commit()

    async def set_positions(self, positions: list[tuple[str, int]]) -> None:
        """Rewrite sibling positions in one commit."""
        if not positions:
            return
        now = _now()
        await self.db.executemany(
            "UPDATE feature_nodes SET position = ?, updated_at = ? WHERE id = ?",
            [(position, now, node_id) for node_id, position in positions],
        )
        await self.db.commit()
