"""Per-user sync cursor.

The cursor is the timestamp of the last fully completed sync for a user.
It lives in the user_data table, one row per user. A user without a row
has never synced and gets the epoch.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Union

from uuid6 import uuid7

from .database import Database
from .timestamp_utils import EPOCH, parse_timestamp, to_iso
from .validation import validate_user_id

logger = logging.getLogger(__name__)


class CursorStore:
    """Reads and writes per-user last-sync timestamps."""

    TABLE = "user_data"

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_cursor(self, user: str) -> datetime:
        """Get the last sync time of a user (epoch if never synced)."""
        user = validate_user_id(user)
        rows = self.db.query(self.TABLE, {"user": user})
        if not rows:
            return EPOCH
        return parse_timestamp(rows[0]["last_sync"])

    def set_cursor(self, user: str, timestamp: Union[datetime, str]) -> None:
        """Record the last sync time of a user, replacing any previous one."""
        user = validate_user_id(user)
        value = to_iso(timestamp)
        self.db.upsert(
            self.TABLE,
            {"id": uuid7().hex, "user": user, "last_sync": value},
            key="user",
        )
        logger.debug(f"Sync cursor for {user} set to {value}")
