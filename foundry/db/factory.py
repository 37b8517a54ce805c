"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from foundry.db.repositories.feature_nodes import SqliteFeatureNodeRepository


def get_feature_node_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteFeatureNodeRepository(db)
    from foundry.db.repositories.postgres.feature_nodes import PostgresFeatureNodeRepository
    return PostgresFeatureNodeRepository(db)
