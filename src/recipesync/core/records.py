"""Record lifecycle envelope for recipesync.

RecordStore is the only write path for syncable entities. Every create and
update stamps the sync envelope (pending, local, last_sync=now) so that the
sync engine can find local changes. The sync engine itself uses the
transitions that do not re-stamp pending: mark_as_synced, mark_as_conflict
and apply_remote.

Records are dataclasses (see models.py). Mutators receive a copy of the
record and change it in place; the stored record is only replaced once the
write succeeds.
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, TypeVar

from uuid6 import uuid7

from .database import ChangeEvent, Database
from .models import Ingredient, SyncRecord, SyncStatus
from .timestamp_utils import now_iso, parse_timestamp

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=SyncRecord)
Mutator = Callable[[Any], None]


class RecordStore:
    """Create, update, soft-delete and query syncable records."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ========================================================================
    # Caller-facing writes
    # ========================================================================

    def create(
        self,
        model: Type[R],
        owner: Optional[str],
        initializer: Optional[Mutator] = None,
    ) -> R:
        """Create a new pending record.

        Args:
            model: Record class (Recipe, Tag, ...)
            owner: Owning user, or None for an unclaimed record
            initializer: Called with the new record to set its fields

        Returns:
            The stored record

        Raises:
            PersistenceError: If the write fails
        """
        record_id = uuid7().hex
        record = model(id=record_id, sync_id=uuid7().hex)
        if initializer is not None:
            initializer(record)
        # The envelope always wins over whatever the initializer set
        record.id = record_id
        if not record.sync_id:
            record.sync_id = uuid7().hex
        record.user_id = owner
        record.sync_status = SyncStatus.PENDING
        record.last_sync = now_iso()
        record.is_local = True
        record.remote_id = None

        self.db.insert(model.TABLE, record.to_row())
        logger.debug(f"Created {model.OBJECT_TYPE} {record.id} for {owner}")
        return record

    def update(self, record: R, mutator: Optional[Mutator] = None) -> R:
        """Apply a mutator and re-stamp the record as pending.

        A mutator that changes nothing is a valid "touch": the record is
        still marked pending and its last_sync refreshed.

        Returns:
            The updated record (a new object)
        """
        updated = dataclasses.replace(record)
        if mutator is not None:
            mutator(updated)
        updated.id = record.id
        updated.sync_status = SyncStatus.PENDING
        updated.is_local = True
        updated.last_sync = now_iso()
        self._write(updated)
        return updated

    def mark_as_deleted(self, record: R) -> R:
        """Soft-delete a record. Dependents are not touched."""

        def tombstone(r: SyncRecord) -> None:
            r.is_deleted = True

        return self.update(record, tombstone)

    # ========================================================================
    # Sync-internal transitions
    # ========================================================================

    def mark_as_synced(self, record: R, remote_id: Optional[str]) -> R:
        """Confirm a pushed record.

        If the stored record no longer matches the pushed snapshot (it was
        edited while the push was in flight), only remote_id is filled in
        and the record stays pending.
        """
        with self.db.transaction():
            current_row = self.db.get(record.TABLE, record.id)
            if current_row is None:
                logger.warning(f"Pushed {record.OBJECT_TYPE} {record.id} no longer exists locally")
                return record
            current = type(record).from_row(current_row)
            effective_remote_id = remote_id or current.remote_id

            if current.to_row() != record.to_row():
                logger.debug(
                    f"{record.OBJECT_TYPE} {record.id} changed during push, keeping it pending"
                )
                current.remote_id = effective_remote_id
                self.db.update(record.TABLE, record.id, {"remote_id": effective_remote_id})
                return current

            current.remote_id = effective_remote_id
            current.sync_status = SyncStatus.SYNCED
            current.is_local = False
            current.last_sync = now_iso()
            self._write(current)
            return current

    def mark_as_conflict(self, record: R) -> R:
        updated = dataclasses.replace(record, sync_status=SyncStatus.CONFLICT)
        self.db.update(record.TABLE, record.id, {"sync_status": SyncStatus.CONFLICT.value})
        return updated

    def apply_remote(
        self,
        model: Type[R],
        existing: Optional[R],
        values: Dict[str, Any],
        owner: Optional[str],
    ) -> R:
        """Write a remote version of a record, marking it synced.

        Args:
            model: Record class
            existing: The local record it overwrites, or None to create one
            values: Local field values from the wire record
            owner: Owning user

        Returns:
            The stored record
        """
        known = set(model.field_names())
        values = {k: v for k, v in values.items() if k in known and k != "id"}

        if existing is None:
            record = model(id=uuid7().hex, **values)
            if not record.sync_id:
                record.sync_id = uuid7().hex
        else:
            record = dataclasses.replace(existing, **values)

        record.user_id = owner
        record.sync_status = SyncStatus.SYNCED
        record.is_local = False
        record.last_sync = now_iso()

        with self.db.transaction():
            if isinstance(record, Ingredient) and not record.is_deleted:
                self._settle_position(record)
            if existing is None:
                self.db.insert(model.TABLE, record.to_row())
            else:
                self._write(record)
        return record

    def _settle_position(self, ingredient: Ingredient) -> None:
        """Keep (recipe_id, order) unique among live ingredients.

        Bulk rewrites of one recipe on two devices produce two ingredients
        for the same position. The one with the greater sync_id (sync ids are
        time-ordered, so the later rewrite) keeps the position and the other
        becomes a pending tombstone, so the deletion reaches the remote and the
        other devices.
        """
        rows = self.db.query(
            Ingredient.TABLE,
            {"recipe_id": ingredient.recipe_id, "order": ingredient.order, "is_deleted": 0},
        )
        for row in rows:
            other = Ingredient.from_row(row)
            if other.id == ingredient.id or other.sync_id == ingredient.sync_id:
                continue
            if other.sync_id > ingredient.sync_id:
                logger.info(
                    f"Ingredient {ingredient.sync_id} superseded by {other.sync_id} "
                    f"at position {ingredient.order}"
                )
                ingredient.is_deleted = True
                ingredient.sync_status = SyncStatus.PENDING
                ingredient.is_local = True
                return
            logger.info(
                f"Ingredient {other.sync_id} superseded by {ingredient.sync_id} "
                f"at position {ingredient.order}"
            )
            self.mark_as_deleted(other)

    def _write(self, record: SyncRecord) -> None:
        row = record.to_row()
        row.pop("id")
        self.db.update(record.TABLE, record.id, row)

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, model: Type[R], record_id: str) -> Optional[R]:
        row = self.db.get(model.TABLE, record_id)
        return model.from_row(row) if row else None

    def find(
        self,
        model: Type[R],
        include_deleted: bool = False,
        order_by: Optional[List[str]] = None,
        **where: Any,
    ) -> List[R]:
        """Find records by field equality.

        Tombstones are excluded unless include_deleted is True.
        """
        conditions = {
            k: (v.value if isinstance(v, SyncStatus) else v) for k, v in where.items()
        }
        if not include_deleted:
            conditions["is_deleted"] = 0
        rows = self.db.query(model.TABLE, conditions, order_by=order_by)
        return [model.from_row(row) for row in rows]

    def find_by_sync_id(
        self, model: Type[R], sync_id: str, user: Optional[str]
    ) -> Optional[R]:
        """Find a record of a user by sync_id, live rows first, tombstones included."""
        rows = self.db.query(
            model.TABLE, {"sync_id": sync_id, "user_id": user}, order_by=["is_deleted"]
        )
        return model.from_row(rows[0]) if rows else None

    def find_by_remote_id(
        self, model: Type[R], remote_id: str, user: Optional[str]
    ) -> Optional[R]:
        rows = self.db.query(model.TABLE, {"remote_id": remote_id, "user_id": user})
        return model.from_row(rows[0]) if rows else None

    def pending(self, model: Type[R], user: Optional[str]) -> List[R]:
        """Pending records of a user, tombstones included, oldest edit first."""
        return self.find(
            model,
            include_deleted=True,
            order_by=["last_sync", "id"],
            user_id=user,
            sync_status=SyncStatus.PENDING,
        )

    def in_conflict(self, model: Type[R], user: Optional[str]) -> List[R]:
        return self.find(
            model, include_deleted=True, user_id=user, sync_status=SyncStatus.CONFLICT
        )

    # ========================================================================
    # Batching, observation and maintenance
    # ========================================================================

    @contextmanager
    def batch(self) -> Iterator["RecordStore"]:
        """Group several writes into one transaction."""
        with self.db.transaction():
            yield self

    def subscribe(
        self, callback: Callable[[ChangeEvent], None], models: Optional[List[Type[SyncRecord]]] = None
    ) -> Callable[[], None]:
        tables = [m.TABLE for m in models] if models is not None else None
        return self.db.subscribe(callback, tables)

    def compact(self, model: Type[SyncRecord], older_than: datetime) -> int:
        """Hard-delete synced tombstones last touched before a cutoff.

        Pending tombstones are kept because they still have to be pushed.

        Returns:
            Number of records removed
        """
        cutoff = parse_timestamp(older_than)
        tombstones = self.db.query(
            model.TABLE, {"is_deleted": 1, "sync_status": SyncStatus.SYNCED.value}
        )
        expired = [
            row["id"]
            for row in tombstones
            if row["last_sync"] and parse_timestamp(row["last_sync"]) < cutoff
        ]
        removed = self.db.delete(model.TABLE, expired)
        if removed:
            logger.info(f"Compacted {removed} {model.OBJECT_TYPE} tombstone(s)")
        return removed
