"""Conflict tracking and manual resolution for recipesync sync.

A record is parked in the conflict state when:
- a pull brings a remote version of a record that has unpushed local edits
  (the remote payload is stored next to the local record), or
- the remote rejects a pushed record (the rejection reason is stored).

Conflicts are never resolved automatically. The user picks a side:
- KEEP_LOCAL re-stamps the local record pending so the next push sends it
- KEEP_REMOTE overwrites the local record with the stored remote version
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from uuid6 import uuid7

from .models import MODELS_BY_TABLE, RecipeImage, SyncRecord
from .records import RecordStore
from .serialization import RecordSerializer
from .timestamp_utils import now_iso

logger = logging.getLogger(__name__)

TABLE = "sync_conflicts"


class ResolutionChoice(Enum):
    """How to resolve a conflict."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"


@dataclass
class SyncConflict:
    """A parked record with both of its versions."""

    id: str  # Conflict ID (UUID hex)
    table: str
    record_id: str  # Local record ID
    sync_id: str
    user_id: Optional[str]
    reason: str
    remote_payload: Optional[Dict[str, Any]]
    created_at: str
    resolved_at: Optional[str] = None
    resolution: Optional[str] = None
    local: Optional[SyncRecord] = None

    @property
    def has_remote_version(self) -> bool:
        return self.remote_payload is not None


class ConflictManager:
    """Manages sync conflicts."""

    def __init__(self, store: RecordStore) -> None:
        """Initialize conflict manager.

        Args:
            store: Record store holding the conflicting records
        """
        self.store = store
        self.db = store.db
        self.serializer = RecordSerializer(store)

    def park(
        self,
        record: SyncRecord,
        reason: str,
        remote_payload: Optional[Dict[str, Any]] = None,
    ) -> SyncRecord:
        """Mark a record as conflicting and store the conflict details.

        A record has at most one open conflict; parking it again replaces the
        reason and the stored remote version.

        Returns:
            The record in the conflict state
        """
        payload_json = json.dumps(remote_payload) if remote_payload is not None else None
        with self.db.transaction():
            parked = self.store.mark_as_conflict(record)
            open_rows = self.db.query(
                TABLE, {"table": record.TABLE, "record_id": record.id, "resolved_at": None}
            )
            if open_rows:
                self.db.update(
                    TABLE,
                    open_rows[0]["id"],
                    {"reason": reason, "remote_payload": payload_json},
                )
            else:
                self.db.insert(
                    TABLE,
                    {
                        "id": uuid7().hex,
                        "table": record.TABLE,
                        "record_id": record.id,
                        "sync_id": record.sync_id,
                        "user_id": record.user_id,
                        "reason": reason,
                        "remote_payload": payload_json,
                        "created_at": now_iso(),
                    },
                )
        logger.warning(f"{record.OBJECT_TYPE} {record.sync_id} in conflict: {reason}")
        return parked

    def _from_row(self, row: Dict[str, Any]) -> SyncConflict:
        payload = row.get("remote_payload")
        conflict = SyncConflict(
            id=row["id"],
            table=row["table"],
            record_id=row["record_id"],
            sync_id=row["sync_id"],
            user_id=row.get("user_id"),
            reason=row["reason"],
            remote_payload=json.loads(payload) if payload else None,
            created_at=row["created_at"],
            resolved_at=row.get("resolved_at"),
            resolution=row.get("resolution"),
        )
        model = MODELS_BY_TABLE.get(conflict.table)
        if model is not None:
            conflict.local = self.store.get(model, conflict.record_id)
        return conflict

    def list_conflicts(
        self, user: Optional[str], include_resolved: bool = False
    ) -> List[SyncConflict]:
        """Get the conflicts of a user, oldest first.

        Args:
            user: Owner of the conflicting records
            include_resolved: If True, include resolved conflicts

        Returns:
            List of SyncConflict objects with the local record attached
        """
        where: Dict[str, Any] = {"user_id": user}
        if not include_resolved:
            where["resolved_at"] = None
        rows = self.db.query(TABLE, where, order_by=["created_at", "id"])
        return [self._from_row(row) for row in rows]

    def get_conflict(self, conflict_id: str) -> Optional[SyncConflict]:
        row = self.db.get(TABLE, conflict_id)
        return self._from_row(row) if row else None

    def get_unresolved_count(self, user: Optional[str]) -> int:
        return self.db.count(TABLE, {"user_id": user, "resolved_at": None})

    def resolve(self, conflict_id: str, choice: ResolutionChoice) -> bool:
        """Resolve a conflict.

        Args:
            conflict_id: Conflict ID (UUID hex)
            choice: KEEP_LOCAL or KEEP_REMOTE

        Returns:
            True if resolved, False if the conflict does not exist or is
            already resolved

        Raises:
            ValueError: If KEEP_REMOTE is chosen but no remote version was stored
        """
        conflict = self.get_conflict(conflict_id)
        if conflict is None or conflict.resolved_at is not None:
            return False
        if conflict.local is None:
            logger.warning(f"Conflict {conflict_id} refers to a missing record, closing it")
            self._close(conflict_id, choice)
            return True

        with self.db.transaction():
            if choice == ResolutionChoice.KEEP_LOCAL:
                self._keep_local(conflict)
            elif choice == ResolutionChoice.KEEP_REMOTE:
                self._keep_remote(conflict)
            else:
                raise ValueError(f"Invalid resolution choice: {choice}")
            self._close(conflict_id, choice)

        logger.info(f"Resolved conflict {conflict_id} with {choice.value}")
        return True

    def _keep_local(self, conflict: SyncConflict) -> None:
        remote_id = (conflict.remote_payload or {}).get("id")

        def adopt_remote_id(record: SyncRecord) -> None:
            if record.remote_id is None and remote_id is not None:
                record.remote_id = str(remote_id)

        self.store.update(conflict.local, adopt_remote_id)

    def _keep_remote(self, conflict: SyncConflict) -> None:
        if conflict.remote_payload is None:
            raise ValueError(
                f"Conflict {conflict.id} has no remote version (rejected push); use keep_local"
            )
        model, values = self.serializer.from_wire(conflict.remote_payload, conflict.user_id)
        if model is RecipeImage:
            # The binary is fetched by the next pull
            has_image = RecordSerializer.has_remote_image(conflict.remote_payload)
            values["needs_download"] = has_image
            if not has_image:
                values.update(image_path=None, thumbnail_path=None, source_digest=None)
        self.store.apply_remote(model, conflict.local, values, conflict.user_id)

    def _close(self, conflict_id: str, choice: ResolutionChoice) -> None:
        self.db.update(
            TABLE, conflict_id, {"resolved_at": now_iso(), "resolution": choice.value}
        )
