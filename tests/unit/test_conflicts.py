"""Unit tests for conflict tracking and resolution."""

from __future__ import annotations

import pytest

from recipesync.core.conflicts import ConflictManager, ResolutionChoice
from recipesync.core.models import Recipe, RecipeImage, SyncStatus, Tag
from recipesync.core.records import RecordStore
from recipesync.core.serialization import RecordSerializer

from tests.conftest import OTHER_USER, TEST_USER


@pytest.fixture
def conflicts(store: RecordStore) -> ConflictManager:
    return ConflictManager(store)


@pytest.fixture
def recipe(store: RecordStore) -> Recipe:
    recipe = store.create(Recipe, TEST_USER, lambda r: setattr(r, "name", "Local soup"))
    return store.update(store.mark_as_synced(recipe, "remote-1"), lambda r: setattr(r, "name", "Local soup v2"))


def remote_version(store: RecordStore, record: Recipe, **changes) -> dict:
    payload = RecordSerializer(store).to_wire(record)
    payload.update(id="remote-1", name="Remote soup", last_update=payload["last_update"] + 1000)
    payload.update(changes)
    return payload


class TestPark:
    def test_marks_record_and_stores_details(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        payload = remote_version(store, recipe)
        parked = conflicts.park(recipe, "Remote changed while local edits were pending", payload)

        assert parked.sync_status == SyncStatus.CONFLICT
        assert store.get(Recipe, recipe.id).sync_status == SyncStatus.CONFLICT

        [conflict] = conflicts.list_conflicts(TEST_USER)
        assert conflict.table == "recipes"
        assert conflict.record_id == recipe.id
        assert conflict.sync_id == recipe.sync_id
        assert conflict.remote_payload == payload
        assert conflict.has_remote_version
        assert conflict.local.name == "Local soup v2"

    def test_parking_twice_replaces_open_conflict(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        conflicts.park(recipe, "first")
        conflicts.park(recipe, "second", remote_version(store, recipe))

        [conflict] = conflicts.list_conflicts(TEST_USER)
        assert conflict.reason == "second"
        assert conflict.has_remote_version
        assert conflicts.get_unresolved_count(TEST_USER) == 1

    def test_scoped_to_user(self, conflicts: ConflictManager, recipe: Recipe) -> None:
        conflicts.park(recipe, "rejected")
        assert conflicts.list_conflicts(OTHER_USER) == []
        assert conflicts.get_unresolved_count(OTHER_USER) == 0


class TestResolve:
    def test_keep_local(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        conflicts.park(recipe, "diverged", remote_version(store, recipe))
        [conflict] = conflicts.list_conflicts(TEST_USER)

        assert conflicts.resolve(conflict.id, ResolutionChoice.KEEP_LOCAL) is True

        stored = store.get(Recipe, recipe.id)
        assert stored.sync_status == SyncStatus.PENDING
        assert stored.name == "Local soup v2"
        assert conflicts.list_conflicts(TEST_USER) == []
        resolved = conflicts.get_conflict(conflict.id)
        assert resolved.resolution == "keep_local"
        assert resolved.resolved_at is not None

    def test_keep_local_adopts_remote_id(
        self, conflicts: ConflictManager, store: RecordStore
    ) -> None:
        tag = store.create(Tag, TEST_USER, lambda t: setattr(t, "name", "quick"))
        payload = RecordSerializer(store).to_wire(tag)
        payload["id"] = "remote-tag"
        conflicts.park(tag, "diverged", payload)
        [conflict] = conflicts.list_conflicts(TEST_USER)

        conflicts.resolve(conflict.id, ResolutionChoice.KEEP_LOCAL)

        assert store.get(Tag, tag.id).remote_id == "remote-tag"

    def test_keep_remote(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        conflicts.park(recipe, "diverged", remote_version(store, recipe, servings=6))
        [conflict] = conflicts.list_conflicts(TEST_USER)

        assert conflicts.resolve(conflict.id, ResolutionChoice.KEEP_REMOTE) is True

        stored = store.get(Recipe, recipe.id)
        assert stored.name == "Remote soup"
        assert stored.servings == 6
        assert stored.sync_status == SyncStatus.SYNCED
        assert stored.remote_id == "remote-1"
        assert conflicts.get_conflict(conflict.id).resolution == "keep_remote"

    def test_keep_remote_without_remote_version(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        conflicts.park(recipe, "rejected by remote")
        [conflict] = conflicts.list_conflicts(TEST_USER)

        with pytest.raises(ValueError):
            conflicts.resolve(conflict.id, ResolutionChoice.KEEP_REMOTE)

        assert store.get(Recipe, recipe.id).sync_status == SyncStatus.CONFLICT
        assert conflicts.get_unresolved_count(TEST_USER) == 1

    def test_keep_remote_image_schedules_download(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        image = store.create(RecipeImage, TEST_USER, lambda i: setattr(i, "sync_id", recipe.sync_id))
        payload = RecordSerializer(store).to_wire(image)
        payload.update(id="remote-img", image=recipe.sync_id)
        conflicts.park(image, "diverged", payload)
        [conflict] = conflicts.list_conflicts(TEST_USER)

        conflicts.resolve(conflict.id, ResolutionChoice.KEEP_REMOTE)

        stored = store.get(RecipeImage, image.id)
        assert stored.needs_download is True
        assert stored.sync_status == SyncStatus.SYNCED

    def test_unknown_or_resolved_conflict(
        self, conflicts: ConflictManager, recipe: Recipe
    ) -> None:
        assert conflicts.resolve("missing", ResolutionChoice.KEEP_LOCAL) is False

        conflicts.park(recipe, "diverged")
        [conflict] = conflicts.list_conflicts(TEST_USER)
        assert conflicts.resolve(conflict.id, ResolutionChoice.KEEP_LOCAL) is True
        assert conflicts.resolve(conflict.id, ResolutionChoice.KEEP_LOCAL) is False

    def test_include_resolved(self, conflicts: ConflictManager, recipe: Recipe) -> None:
        conflicts.park(recipe, "diverged")
        [conflict] = conflicts.list_conflicts(TEST_USER)
        conflicts.resolve(conflict.id, ResolutionChoice.KEEP_LOCAL)

        assert [c.id for c in conflicts.list_conflicts(TEST_USER, include_resolved=True)] == [
            conflict.id
        ]

    def test_record_can_conflict_again_after_resolution(
        self, conflicts: ConflictManager, store: RecordStore, recipe: Recipe
    ) -> None:
        conflicts.park(recipe, "first")
        [first] = conflicts.list_conflicts(TEST_USER)
        conflicts.resolve(first.id, ResolutionChoice.KEEP_LOCAL)

        conflicts.park(store.get(Recipe, recipe.id), "second")

        [second] = conflicts.list_conflicts(TEST_USER)
        assert second.id != first.id
        assert second.reason == "second"
