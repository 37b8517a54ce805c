"""Error types raised by the feature tree engine."""
from __future__ import annotations


class FeatureTreeError(Exception):
    """Base class for feature tree failures."""


class ValidationError(FeatureTreeError, ValueError):
    """Raised when input is rejected before any write happens."""


class NotFoundError(FeatureTreeError, LookupError):
    """Raised when a node or parent reference does not resolve in the project."""


class BulkCreateError(FeatureTreeError):
    """Raised when a bulk insert fails partway.

    Nodes inserted before the failure are kept; callers must re-read the tree.
    """

    def __init__(self, created_count: int, failed_title: str, node_ids: list[str] | None = None):
        super().__init__(f"Failed to insert node '{failed_title}' after {created_count} created")
        self.created_count = created_count
        self.failed_title = failed_title
        self.node_ids = list(node_ids or [])


class CascadeError(FeatureTreeError):
    """Raised when an ancestor status write fails during a cascade walk.

    The triggering change and any ancestors already in ``cascade_log`` stay committed.
    """

    def __init__(self, node_id: str, message: str, cascade_log: list | None = None):
        super().__init__(f"Status cascade stopped at node '{node_id}': {message}")
        self.node_id = node_id
        self.cascade_log = list(cascade_log or [])
