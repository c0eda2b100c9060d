"""Unit tests for input validation."""

from __future__ import annotations

import pytest

from recipesync.core.validation import (
    MAX_RECIPE_NAME_LENGTH,
    ValidationError,
    validate_minutes,
    validate_order,
    validate_rating,
    validate_recipe_name,
    validate_servings,
    validate_tag_name,
    validate_url,
    validate_user_id,
    validate_uuid_hex,
)


class TestValidationError:
    def test_attributes(self) -> None:
        error = ValidationError("name", "cannot be empty")
        assert error.field == "name"
        assert error.message == "cannot be empty"
        assert str(error) == "name: cannot be empty"
        assert isinstance(error, ValueError)


class TestUuidHex:
    def test_canonical_form(self) -> None:
        value = "0190A1B2-C3D4-E5F6-0718-293A4B5C6D7E"
        assert validate_uuid_hex(value) == "0190a1b2c3d4e5f60718293a4b5c6d7e"

    @pytest.mark.parametrize("value", ["", "xyz", 42])
    def test_invalid(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_uuid_hex(value)


class TestUserId:
    def test_strips(self) -> None:
        assert validate_user_id("  alice@example.com ") == "alice@example.com"

    @pytest.mark.parametrize("value", ["", "  ", None, 7, "a" * 255])
    def test_invalid(self, value) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_user_id(value)
        assert exc_info.value.field == "user"


class TestNames:
    def test_recipe_name(self) -> None:
        assert validate_recipe_name(" Soup ") == "Soup"
        with pytest.raises(ValidationError):
            validate_recipe_name("")
        with pytest.raises(ValidationError):
            validate_recipe_name("x" * (MAX_RECIPE_NAME_LENGTH + 1))

    def test_tag_name(self) -> None:
        assert validate_tag_name("quick ") == "quick"
        with pytest.raises(ValidationError):
            validate_tag_name(None)


class TestNumbers:
    @pytest.mark.parametrize("value", [None, 0, 2.5, 5])
    def test_valid_rating(self, value) -> None:
        assert validate_rating(value) == value

    @pytest.mark.parametrize("value", [-1, 5.5, True, "4"])
    def test_invalid_rating(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_rating(value)

    def test_minutes(self) -> None:
        assert validate_minutes(None, "prep_time") is None
        assert validate_minutes(0, "prep_time") == 0
        with pytest.raises(ValidationError) as exc_info:
            validate_minutes(-5, "prep_time")
        assert exc_info.value.field == "prep_time"
        with pytest.raises(ValidationError):
            validate_minutes(1.5, "prep_time")

    def test_servings(self) -> None:
        assert validate_servings(4) == 4
        assert validate_servings(None) is None
        for bad in (0, -2, True, 2.0):
            with pytest.raises(ValidationError):
                validate_servings(bad)

    def test_order(self) -> None:
        assert validate_order(0) == 0
        with pytest.raises(ValidationError):
            validate_order(-1)


class TestUrl:
    def test_strips_trailing_slash(self) -> None:
        assert validate_url("https://sync.example.com/") == "https://sync.example.com"

    @pytest.mark.parametrize("value", ["", "ftp://example.com", "example.com", None])
    def test_invalid(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_url(value)
