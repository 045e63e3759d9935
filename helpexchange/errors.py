"""
Error taxonomy shared by every storage backend.
"""

from __future__ import annotations


class HelpExchangeError(Exception):
    """Base class for storage-layer errors."""


class NotFound(HelpExchangeError):
    """Raised when an update path targets an id that does not exist."""

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidState(HelpExchangeError):
    """Raised when an operation is not valid for the current data."""


class BackendUnavailable(HelpExchangeError):
    """Raised when a backend cannot be reached or loaded."""
