"""Repository package for database access."""

from .feature_nodes import SqliteFeatureNodeRepository

__all__ = [
    "SqliteFeatureNodeRepository",
]
