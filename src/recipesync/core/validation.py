"""Input validation for recipesync.

This module provides validation functions for user inputs and for records
received from the remote service. All validators raise ValidationError
with descriptive messages.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

__all__ = [
    "ValidationError",
    "validate_uuid_hex",
    "validate_user_id",
    "validate_recipe_name",
    "validate_rating",
    "validate_minutes",
    "validate_servings",
    "validate_tag_name",
    "validate_order",
    "validate_url",
    "validate_item_name",
    "validate_notification",
    "validate_language",
]

MAX_RECIPE_NAME_LENGTH = 200
MAX_TAG_NAME_LENGTH = 100
MAX_USER_ID_LENGTH = 254
MIN_RATING = 0
MAX_RATING = 5
MAX_ITEM_NAME_LENGTH = 200
NOTIFICATION_TYPES = ("info", "warn")
LANGUAGES = ("pl", "en")


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


def validate_uuid_hex(value: str, field_name: str = "id") -> str:
    """Validate a UUID hex string and return it in canonical 32-char form."""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    try:
        return uuid.UUID(hex=value.replace("-", "")).hex
    except ValueError as e:
        raise ValidationError(field_name, f"invalid UUID format: {e}") from None


def validate_user_id(user_id: Any) -> str:
    """Validate an opaque user identifier (typically an email address)."""
    if not isinstance(user_id, str):
        raise ValidationError("user", f"must be a string, got {type(user_id).__name__}")
    user_id = user_id.strip()
    if not user_id:
        raise ValidationError("user", "cannot be empty")
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError("user", f"cannot exceed {MAX_USER_ID_LENGTH} characters")
    return user_id


def validate_recipe_name(name: Any) -> str:
    """Validate a recipe name and return it stripped."""
    if not isinstance(name, str):
        raise ValidationError("name", f"must be a string, got {type(name).__name__}")
    name = name.strip()
    if not name:
        raise ValidationError("name", "cannot be empty")
    if len(name) > MAX_RECIPE_NAME_LENGTH:
        raise ValidationError("name", f"cannot exceed {MAX_RECIPE_NAME_LENGTH} characters")
    return name


def validate_tag_name(name: Any) -> str:
    """Validate a tag name and return it stripped."""
    if not isinstance(name, str):
        raise ValidationError("name", f"must be a string, got {type(name).__name__}")
    name = name.strip()
    if not name:
        raise ValidationError("name", "cannot be empty")
    if len(name) > MAX_TAG_NAME_LENGTH:
        raise ValidationError("name", f"cannot exceed {MAX_TAG_NAME_LENGTH} characters")
    return name


def validate_rating(rating: Any) -> Optional[float]:
    """Validate a recipe rating (0 to 5 inclusive, or None)."""
    if rating is None:
        return None
    if isinstance(rating, bool) or not isinstance(rating, (int, float)):
        raise ValidationError("rating", f"must be a number, got {type(rating).__name__}")
    if rating < MIN_RATING or rating > MAX_RATING:
        raise ValidationError("rating", f"must be between {MIN_RATING} and {MAX_RATING}")
    return rating


def validate_minutes(value: Any, field_name: str) -> Optional[int]:
    """Validate a duration in minutes (non-negative int, or None)."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field_name, f"must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValidationError(field_name, "cannot be negative")
    return value


def validate_servings(value: Any) -> Optional[int]:
    """Validate a servings count (positive int, or None)."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("servings", f"must be an integer, got {type(value).__name__}")
    if value <= 0:
        raise ValidationError("servings", "must be positive")
    return value


def validate_order(value: Any, field_name: str = "order") -> int:
    """Validate an ordering index (int >= 0)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field_name, f"must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValidationError(field_name, "cannot be negative")
    return value


def validate_url(value: Any, field_name: str = "server_url") -> str:
    """Validate an http(s) URL and return it without a trailing slash."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field_name, "cannot be empty")
    value = value.strip()
    if not (value.startswith("http://") or value.startswith("https://")):
        raise ValidationError(field_name, "must start with http:// or https://")
    return value.rstrip("/")


def validate_item_name(name: Any) -> str:
    """Validate a shopping item name and return it stripped."""
    if not isinstance(name, str):
        raise ValidationError("name", f"must be a string, got {type(name).__name__}")
    name = name.strip()
    if not name:
        raise ValidationError("name", "cannot be empty")
    if len(name) > MAX_ITEM_NAME_LENGTH:
        raise ValidationError("name", f"cannot exceed {MAX_ITEM_NAME_LENGTH} characters")
    return name


def validate_notification(content: Any, kind: Any) -> str:
    """Validate notification content and type; returns the stripped content."""
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content", "cannot be empty")
    if kind not in NOTIFICATION_TYPES:
        raise ValidationError("type", f"must be one of {', '.join(NOTIFICATION_TYPES)}")
    return content.strip()


def validate_language(language: Any) -> str:
    if language not in LANGUAGES:
        raise ValidationError("language", f"must be one of {', '.join(LANGUAGES)}")
    return language
