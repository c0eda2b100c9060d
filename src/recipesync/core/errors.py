"""Error taxonomy for recipesync.

PersistenceError  - a local write could not be performed. Fatal to the
                    operation that triggered it; never retried automatically.
TransformError    - an image could not be resized or compressed. The image
                    pipeline turns it into a null artifact.
TransportError    - a remote call failed. The affected records stay as they
                    were and are retried on the next cycle.
ConflictError     - not raised by the engine. Describes a record parked in
                    the conflict state so callers can surface it.
"""

from __future__ import annotations

from typing import Optional


class RecipeSyncError(Exception):
    """Base class for all recipesync errors."""


class PersistenceError(RecipeSyncError):
    """Local store write or read failed."""


class TransformError(RecipeSyncError):
    """Image resize or compression failed."""


class TransportError(RecipeSyncError):
    """Network or remote service call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnresolvedReferenceError(RecipeSyncError):
    """A wire record references a sync_id that is not known locally yet."""

    def __init__(self, table: str, sync_id: str) -> None:
        super().__init__(f"Unknown {table} reference: {sync_id}")
        self.table = table
        self.sync_id = sync_id


class ConflictError(RecipeSyncError):
    """A record whose local and remote versions diverged."""

    def __init__(self, table: str, record_id: str, reason: str) -> None:
        super().__init__(f"Conflict on {table} {record_id}: {reason}")
        self.table = table
        self.record_id = record_id
        self.reason = reason
