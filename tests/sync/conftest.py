"""Pytest fixtures for sync tests.

This module provides fixtures for:
- An in-memory remote (RemoteState) shared by several devices
- Fake sync and image clients with failure injection
- Devices: isolated local stores with their own orchestrator
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from recipesync.core.conflicts import ConflictManager
from recipesync.core.cursor_store import CursorStore
from recipesync.core.database import Database
from recipesync.core.image_pipeline import ImagePipeline
from recipesync.core.recipes import RecipeBook
from recipesync.core.records import RecordStore
from recipesync.core.sync import SyncOrchestrator
from recipesync.core.sync_server import RemoteState

from tests.conftest import TEST_USER
from tests.helpers import FakeImageClient, FakeSyncApi


@dataclass
class Device:
    """One client device: its own local store, images and orchestrator."""

    name: str
    db: Database
    store: RecordStore
    cursors: CursorStore
    pipeline: ImagePipeline
    book: RecipeBook
    conflicts: ConflictManager
    api: Any
    images: Any
    orchestrator: SyncOrchestrator
    active_user: Optional[str] = TEST_USER

    def sync(self, user: Optional[str] = None):
        return self.orchestrator.sync_once(user or self.active_user)


DeviceFactory = Callable[..., Device]


@pytest.fixture
def remote() -> RemoteState:
    return RemoteState()


@pytest.fixture
def make_device(tmp_path: Path, remote: RemoteState) -> Generator[DeviceFactory, None, None]:
    """Factory for devices sharing one remote.

    Each device gets its own FakeSyncApi and FakeImageClient over the shared
    remote state, unless api/images are passed in.
    """
    devices: List[Device] = []

    def factory(
        name: str = "device-a",
        user: Optional[str] = TEST_USER,
        api: Any = None,
        images: Any = None,
        batch_size: int = 20,
        interval: float = 0.05,
    ) -> Device:
        root = tmp_path / name
        db = Database(root / "recipes.db")
        store = RecordStore(db)
        cursors = CursorStore(db)
        pipeline = ImagePipeline(root / "images")
        api = api if api is not None else FakeSyncApi(remote)
        images = images if images is not None else FakeImageClient(remote)

        device: Device
        orchestrator = SyncOrchestrator(
            store,
            cursors,
            api,
            images,
            pipeline,
            lambda: device.active_user,
            interval=interval,
            batch_size=batch_size,
        )
        device = Device(
            name=name,
            db=db,
            store=store,
            cursors=cursors,
            pipeline=pipeline,
            book=RecipeBook(store, pipeline),
            conflicts=ConflictManager(store),
            api=api,
            images=images,
            orchestrator=orchestrator,
            active_user=user,
        )
        devices.append(device)
        return device

    yield factory

    for device in devices:
        device.orchestrator.stop(timeout=5)
        device.db.close()


@pytest.fixture
def device(make_device: DeviceFactory) -> Device:
    return make_device("device-a")


@pytest.fixture
def other_device(make_device: DeviceFactory) -> Device:
    return make_device("device-b")
