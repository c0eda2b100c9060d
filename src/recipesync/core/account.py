"""Per-user settings and notifications.

Both are sync records owned by the active user. Settings are created with
defaults on first access; when two devices each created one before their
first sync, the earliest by sync_id is used.
"""

from __future__ import annotations

import logging
import time
from typing import Any, List, Optional

from .models import Notification, UserSettings
from .records import RecordStore
from .validation import ValidationError, validate_language, validate_notification

logger = logging.getLogger(__name__)

SETTINGS_FIELDS = ("language", "auto_translate_recipes", "allow_friends_views_recipes")


class Account:
    """Settings and notifications of the users of one device store."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    # ===== Settings =====

    def settings(self, owner: Optional[str]) -> UserSettings:
        """Get a user's settings, creating the defaults if there are none."""
        existing = self.store.find(UserSettings, order_by=["sync_id"], user_id=owner)
        if existing:
            return existing[0]
        logger.info(f"Creating default settings for {owner}")
        return self.store.create(UserSettings, owner)

    def update_settings(self, owner: Optional[str], **fields: Any) -> UserSettings:
        """Change any of language, auto_translate_recipes, allow_friends_views_recipes.

        Raises:
            ValidationError: On an unknown field or unsupported language
        """
        unknown = set(fields) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValidationError(sorted(unknown)[0], "unknown settings field")
        if "language" in fields:
            validate_language(fields["language"])

        def apply(settings: UserSettings) -> None:
            for key, value in fields.items():
                setattr(settings, key, value if key == "language" else bool(value))

        return self.store.update(self.settings(owner), apply)

    # ===== Notifications =====

    def notify(
        self, owner: Optional[str], content: str, kind: str = "info", link: Optional[str] = None
    ) -> Notification:
        """Create an unread notification; newer ones sort first."""
        content = validate_notification(content, kind)
        latest = max((n.order for n in self.store.find(Notification, user_id=owner)), default=0)
        position = max(time.time_ns() // 1_000_000, latest + 1)

        def init(notification: Notification) -> None:
            notification.content = content
            notification.type = kind
            notification.link = link
            notification.order = position

        return self.store.create(Notification, owner, init)

    def notifications(self, owner: Optional[str], unread_only: bool = False) -> List[Notification]:
        """Live notifications, unread first, newest first within each group."""
        where = {"is_read": 0} if unread_only else {}
        found = self.store.find(Notification, user_id=owner, **where)
        return sorted(found, key=lambda n: (n.is_read, -n.order))

    def mark_read(self, notification: Notification, read: bool = True) -> Notification:
        def mark(n: Notification) -> None:
            n.is_read = read

        return self.store.update(notification, mark)

    def mark_all_read(self, owner: Optional[str]) -> int:
        unread = self.notifications(owner, unread_only=True)
        with self.store.batch():
            for notification in unread:
                self.mark_read(notification)
        return len(unread)

    def delete_read(self, owner: Optional[str]) -> int:
        """Tombstone every read notification.

        Returns:
            Number of notifications removed
        """
        read = self.store.find(Notification, user_id=owner, is_read=1)
        with self.store.batch():
            for notification in read:
                self.store.mark_as_deleted(notification)
        if read:
            logger.info(f"Deleted {len(read)} read notification(s) for {owner}")
        return len(read)
