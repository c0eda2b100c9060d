"""Pytest fixtures for recipesync tests.

This module provides fixtures for test configuration, the local store,
the record envelope, the image pipeline and the recipe book.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from recipesync.core.config import Config
from recipesync.core.cursor_store import CursorStore
from recipesync.core.database import Database
from recipesync.core.image_pipeline import ImagePipeline
from recipesync.core.recipes import RecipeBook
from recipesync.core.records import RecordStore

TEST_USER = "alice@example.com"
OTHER_USER = "bob@example.com"


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "recipesync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration."""
    return Config(config_dir=test_config_dir)


@pytest.fixture
def test_db_path(test_config_dir: Path) -> Path:
    return test_config_dir / "test_recipes.db"


@pytest.fixture
def empty_db(test_db_path: Path) -> Generator[Database, None, None]:
    """Create empty test database.

    Yields:
        Empty Database instance.
    """
    db = Database(test_db_path)
    yield db
    db.close()


@pytest.fixture
def store(empty_db: Database) -> RecordStore:
    return RecordStore(empty_db)


@pytest.fixture
def cursors(empty_db: Database) -> CursorStore:
    return CursorStore(empty_db)


@pytest.fixture
def pipeline(test_config_dir: Path) -> ImagePipeline:
    return ImagePipeline(test_config_dir / "images")


@pytest.fixture
def book(store: RecordStore, pipeline: ImagePipeline) -> RecipeBook:
    return RecipeBook(store, pipeline)
