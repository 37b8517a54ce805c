"""Database schema creation and versioning.

All CREATE TABLE statements for the feature tree store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("foundry.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── Feature tree ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS feature_nodes (
    id           TEXT PRIMARY KEY,
    project_id   TEXT NOT NULL,
    parent_id    TEXT REFERENCES feature_nodes(id),
    title        TEXT NOT NULL,
    description  TEXT,
    level        TEXT NOT NULL
                 CHECK (level IN ('epic', 'feature', 'sub_feature', 'task')),
    status       TEXT NOT NULL DEFAULT 'not_started'
                 CHECK (status IN ('not_started', 'in_progress', 'complete', 'blocked')),
    position     INTEGER NOT NULL DEFAULT 0 CHECK (position >= 0),
    deleted_at   TEXT,
    created_by   TEXT DEFAULT '',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_feature_nodes_siblings ON feature_nodes(project_id, parent_id, position);
CREATE INDEX IF NOT EXISTS idx_feature_nodes_live     ON feature_nodes(project_id, deleted_at);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    # Check current schema version
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except Exception:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # v2: weak link back to the idea a node was promoted from.
    await _ensure_column(db, "feature_nodes", "origin_id", "TEXT")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_feature_nodes_origin ON feature_nodes(origin_id)")

    # Record schema version
    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
