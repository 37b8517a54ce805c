"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("foundry.db")

SCHEMA_VERSION = 2

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

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
    updated_at   TEXT NOT NULL,
    origin_id    TEXT
);

CREATE INDEX IF NOT EXISTS idx_feature_nodes_siblings ON feature_nodes(project_id, parent_id, position);
CREATE INDEX IF NOT EXISTS idx_feature_nodes_live     ON feature_nodes(project_id, deleted_at);
CREATE INDEX IF NOT EXISTS idx_feature_nodes_origin   ON feature_nodes(origin_id);
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        await conn.execute(_TABLES)
        current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        if current_version >= SCHEMA_VERSION:
            logger.info("Schema is up to date (version %s)", current_version)
            return
        await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
