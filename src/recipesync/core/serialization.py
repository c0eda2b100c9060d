"""Wire serialization for recipesync records.

Each entity has an explicit field table mapping local attribute names to
remote wire names. Every wire record also carries the envelope:

    object_type, sync_id, id (remote id), owner, last_update (epoch ms),
    is_deleted

Locally, records reference each other by local id; on the wire they
reference each other by sync_id. The serializer translates in both
directions and raises UnresolvedReferenceError when a reference cannot be
translated yet.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Optional, Tuple, Type

from .errors import UnresolvedReferenceError
from .models import (
    MODELS_BY_OBJECT_TYPE,
    Ingredient,
    Notification,
    Recipe,
    RecipeImage,
    RecipeTag,
    ShoppingItem,
    SyncRecord,
    Tag,
    UserSettings,
)
from .records import RecordStore
from .timestamp_utils import to_epoch_ms
from .validation import ValidationError

logger = logging.getLogger(__name__)

# local attribute -> wire name
FIELD_MAPS: Dict[Type[SyncRecord], Dict[str, str]] = {
    Recipe: {
        "name": "name",
        "description": "description",
        "instructions": "instructions",
        "notes": "notes",
        "nutrition": "nutrition",
        "source": "source",
        "video_url": "video",
        "rating": "rating",
        "prep_time": "prep_time",
        "total_time": "total_time",
        "servings": "servings",
        "is_approved": "is_approved",
    },
    Ingredient: {
        "amount": "amount",
        "unit": "unit",
        "name": "name",
        "type": "type",
        "original_str": "original_str",
        "order": "order",
    },
    Tag: {
        "name": "name",
        "order": "order",
    },
    RecipeTag: {},
    RecipeImage: {},
    ShoppingItem: {
        "amount": "amount",
        "unit": "unit",
        "name": "name",
        "type": "type",
        "order": "order",
        "is_checked": "is_checked",
    },
    Notification: {
        "content": "content",
        "type": "type",
        "link": "link",
        "is_read": "is_readed",
        "order": "order",
    },
    UserSettings: {
        "language": "language",
        "auto_translate_recipes": "auto_translate_recipes",
        "allow_friends_views_recipes": "allow_friends_views_recipes",
    },
}

# local attribute -> (wire name, referenced model)
REFERENCE_MAPS: Dict[Type[SyncRecord], Dict[str, Tuple[str, Type[SyncRecord]]]] = {
    Recipe: {},
    Ingredient: {"recipe_id": ("recipe", Recipe)},
    Tag: {},
    RecipeTag: {"recipe_id": ("recipe", Recipe), "tag_id": ("tag", Tag)},
    RecipeImage: {},
    ShoppingItem: {},
    Notification: {},
    UserSettings: {},
}


def _field_defaults(model: Type[SyncRecord]) -> Dict[str, Any]:
    """Defaults of the fields that cannot hold None, keyed by attribute."""
    return {
        f.name: f.default
        for f in dataclasses.fields(model)
        if not str(f.type).startswith("Optional") and f.default is not dataclasses.MISSING
    }


# Wire nulls for these fields fall back to the model default
FIELD_DEFAULTS: Dict[Type[SyncRecord], Dict[str, Any]] = {
    model: _field_defaults(model) for model in FIELD_MAPS
}


class RecordSerializer:
    """Converts records to and from wire payloads."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def to_wire(self, record: SyncRecord) -> Dict[str, Any]:
        """Serialize a local record for pushing.

        Raises:
            UnresolvedReferenceError: If a referenced record is missing locally
        """
        model = type(record)
        payload: Dict[str, Any] = {
            "object_type": model.OBJECT_TYPE,
            "sync_id": record.sync_id,
            "id": record.remote_id,
            "owner": record.user_id,
            "last_update": to_epoch_ms(record.last_sync),
            "is_deleted": record.is_deleted,
        }
        for local_name, wire_name in FIELD_MAPS[model].items():
            payload[wire_name] = getattr(record, local_name)

        for local_name, (wire_name, ref_model) in REFERENCE_MAPS[model].items():
            local_id = getattr(record, local_name)
            target = self.store.get(ref_model, local_id) if local_id else None
            if target is None:
                raise UnresolvedReferenceError(ref_model.TABLE, local_id or "")
            payload[wire_name] = target.sync_id

        if isinstance(record, RecipeImage):
            # The binary travels separately, keyed by the logical id
            payload["image"] = record.sync_id if record.has_image else None
            payload["thumbnail"] = None
            payload["recipe_sync_id"] = record.sync_id

        return payload

    @staticmethod
    def model_for(payload: Dict[str, Any]) -> Type[SyncRecord]:
        """Get the record class of a wire payload.

        Raises:
            ValidationError: If the object type is missing or unknown
        """
        object_type = payload.get("object_type")
        model = MODELS_BY_OBJECT_TYPE.get(object_type)
        if model is None:
            raise ValidationError("object_type", f"unknown object type: {object_type!r}")
        return model

    def from_wire(
        self, payload: Dict[str, Any], user: Optional[str]
    ) -> Tuple[Type[SyncRecord], Dict[str, Any]]:
        """Deserialize a pulled wire record into local field values.

        Args:
            payload: Wire record
            user: Owner the references are resolved against

        Returns:
            (model, values) where values uses local attribute names and
            includes sync_id, remote_id and is_deleted

        Raises:
            ValidationError: If the payload is malformed
            UnresolvedReferenceError: If a referenced sync_id is not known locally
        """
        model = self.model_for(payload)
        sync_id = payload.get("sync_id")
        if not sync_id or not isinstance(sync_id, str):
            raise ValidationError("sync_id", "missing from wire record")

        remote_id = payload.get("id")
        values: Dict[str, Any] = {
            "sync_id": sync_id,
            "remote_id": str(remote_id) if remote_id is not None else None,
            "is_deleted": bool(payload.get("is_deleted", False)),
        }
        defaults = FIELD_DEFAULTS[model]
        for local_name, wire_name in FIELD_MAPS[model].items():
            value = payload.get(wire_name)
            if value is None and local_name in defaults:
                value = defaults[local_name]
            if isinstance(defaults.get(local_name), bool):
                value = bool(value)
            values[local_name] = value

        for local_name, (wire_name, ref_model) in REFERENCE_MAPS[model].items():
            ref_sync_id = payload.get(wire_name)
            target = (
                self.store.find_by_sync_id(ref_model, ref_sync_id, user)
                if ref_sync_id
                else None
            )
            if target is None:
                raise UnresolvedReferenceError(ref_model.TABLE, ref_sync_id or "")
            values[local_name] = target.id

        return model, values

    @staticmethod
    def has_remote_image(payload: Dict[str, Any]) -> bool:
        """True if a recipe_image wire record says the remote holds a binary."""
        return bool(payload.get("image")) and not payload.get("is_deleted", False)
