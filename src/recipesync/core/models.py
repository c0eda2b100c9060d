"""Data models for recipesync.

Every syncable entity is a dataclass built on SyncRecord, the common
lifecycle envelope: local id, logical sync_id, remote id, owner, sync
status, last sync touch, local/remote flag and soft-delete tombstone.

Models convert to and from flat store rows (dicts) with to_row/from_row.
Conversion to the remote wire format lives in serialization.py.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type


class SyncStatus(str, Enum):
    """Synchronization state of a record."""

    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


_BOOL_TYPES = ("bool", "Optional[bool]")


@dataclass
class SyncRecord:
    """Base envelope shared by every syncable entity.

    Attributes:
        id: Local identity (UUID7 hex), assigned at creation and never reused
        sync_id: Logical identity shared between devices (UUID7 hex)
        remote_id: Identity assigned by the remote service once accepted
        user_id: Owner; None means shared/unclaimed
        sync_status: pending, synced or conflict
        last_sync: ISO timestamp of the last sync touch of this record
        is_local: True until the record has been confirmed by the remote
        is_deleted: Soft-delete tombstone
    """

    TABLE: ClassVar[str] = ""
    OBJECT_TYPE: ClassVar[str] = ""

    id: str = ""
    sync_id: str = ""
    remote_id: Optional[str] = None
    user_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync: Optional[str] = None
    is_local: bool = True
    is_deleted: bool = False

    @property
    def is_pending(self) -> bool:
        return self.sync_status == SyncStatus.PENDING

    @property
    def is_synced(self) -> bool:
        return self.sync_status == SyncStatus.SYNCED

    @property
    def has_conflict(self) -> bool:
        return self.sync_status == SyncStatus.CONFLICT

    @property
    def needs_sync(self) -> bool:
        """True if the record must not be blindly overwritten by a pull."""
        return self.is_pending or self.has_conflict

    def to_row(self) -> Dict[str, Any]:
        """Convert to a flat store row."""
        row: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, SyncStatus):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            row[f.name] = value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SyncRecord":
        """Build a record from a store row, ignoring unknown columns."""
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in row:
                continue
            value = row[f.name]
            if f.name == "sync_status":
                value = SyncStatus(value)
            elif f.type in _BOOL_TYPES and value is not None:
                value = bool(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]


@dataclass
class Recipe(SyncRecord):
    """A recipe.

    Instructions are newline-delimited steps. Times are in minutes.
    Machine-imported recipes start unapproved.
    """

    TABLE: ClassVar[str] = "recipes"
    OBJECT_TYPE: ClassVar[str] = "recipe"

    name: str = ""
    description: Optional[str] = None
    instructions: str = ""
    notes: Optional[str] = None
    nutrition: Optional[str] = None
    source: Optional[str] = None
    video_url: Optional[str] = None
    rating: Optional[float] = None
    prep_time: Optional[int] = None
    total_time: Optional[int] = None
    servings: Optional[int] = None
    is_approved: bool = False

    @property
    def steps(self) -> List[str]:
        return [line.strip() for line in self.instructions.split("\n") if line.strip()]

    @property
    def has_video(self) -> bool:
        return bool(self.video_url)

    @property
    def cooking_time(self) -> Optional[int]:
        """Total time minus prep time, or None if total time is unknown."""
        if not self.total_time:
            return None
        return self.total_time - (self.prep_time or 0)


@dataclass
class Ingredient(SyncRecord):
    """An ingredient line belonging to exactly one recipe."""

    TABLE: ClassVar[str] = "ingredients"
    OBJECT_TYPE: ClassVar[str] = "ingredient"

    recipe_id: str = ""
    amount: Optional[float] = None
    unit: Optional[str] = None
    name: str = ""
    type: Optional[str] = None
    original_str: str = ""
    order: int = 0

    @property
    def display_name(self) -> str:
        """Structured name, falling back to the original free text."""
        return self.name or self.original_str


@dataclass
class Tag(SyncRecord):
    """A user-defined recipe tag."""

    TABLE: ClassVar[str] = "tags"
    OBJECT_TYPE: ClassVar[str] = "tag"

    name: str = ""
    order: int = 0

    @property
    def display_name(self) -> str:
        return self.name[:1].upper() + self.name[1:].lower()


@dataclass
class RecipeTag(SyncRecord):
    """Association between a recipe and a tag (local ids)."""

    TABLE: ClassVar[str] = "recipe_tags"
    OBJECT_TYPE: ClassVar[str] = "recipe_tag"

    recipe_id: str = ""
    tag_id: str = ""


@dataclass
class RecipeImage(SyncRecord):
    """Processed image artifacts for a recipe.

    Keyed by sync_id, which equals the owning recipe's sync_id. Holds file
    paths, never raw bytes.

    Attributes:
        image_path: Path of the full-size processed image
        thumbnail_path: Path of the square thumbnail
        source_digest: SHA-256 of the normalized source the artifacts came from
        needs_download: Remote image exists but could not be retrieved yet
    """

    TABLE: ClassVar[str] = "recipe_images"
    OBJECT_TYPE: ClassVar[str] = "recipe_image"

    image_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    source_digest: Optional[str] = None
    needs_download: bool = False

    @property
    def has_image(self) -> bool:
        return bool(self.image_path)


@dataclass
class ShoppingItem(SyncRecord):
    """A shopping list entry, usually copied from a recipe ingredient."""

    TABLE: ClassVar[str] = "shopping_items"
    OBJECT_TYPE: ClassVar[str] = "shopping_item"

    amount: Optional[float] = None
    unit: Optional[str] = None
    name: str = ""
    type: Optional[str] = None
    order: int = 0
    is_checked: bool = False


@dataclass
class Notification(SyncRecord):
    """A message shown to the user, optionally linking to an app route."""

    TABLE: ClassVar[str] = "notifications"
    OBJECT_TYPE: ClassVar[str] = "notification"

    content: str = ""
    type: str = "info"
    link: Optional[str] = None
    is_read: bool = False
    order: int = 0


@dataclass
class UserSettings(SyncRecord):
    """Per-user preferences. A user has at most one live settings record."""

    TABLE: ClassVar[str] = "user_settings"
    OBJECT_TYPE: ClassVar[str] = "user_settings"

    language: str = "pl"
    auto_translate_recipes: bool = True
    allow_friends_views_recipes: bool = True


# Push order; pull applies tags and recipes first (see sync.py)
SYNC_MODELS: Tuple[Type[SyncRecord], ...] = (
    Recipe,
    Tag,
    RecipeTag,
    Ingredient,
    Notification,
    UserSettings,
    ShoppingItem,
    RecipeImage,
)

MODELS_BY_TABLE: Dict[str, Type[SyncRecord]] = {m.TABLE: m for m in SYNC_MODELS}
MODELS_BY_OBJECT_TYPE: Dict[str, Type[SyncRecord]] = {m.OBJECT_TYPE: m for m in SYNC_MODELS}
