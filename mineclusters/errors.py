"""Error taxonomy for distance, clustering and optimization failures."""

from __future__ import annotations


class DataIntegrityError(ValueError):
    """Malformed geometry, distance matrix, partition or mismatched group keys."""


class ConfigurationError(ValueError):
    """Invalid search or clustering configuration, raised before any work starts."""


class ComputationFailure(RuntimeError):
    """A parallel distance job failed; nothing was persisted for the group."""

    def __init__(self, group_key: str, message: str) -> None:
        super().__init__(f"Distance matrix for group {group_key!r} failed: {message}")
        self.group_key = group_key
