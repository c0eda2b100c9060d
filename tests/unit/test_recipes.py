"""Unit tests for recipe, ingredient, tag and image operations."""

from __future__ import annotations

import pytest

from recipesync.core.image_pipeline import ImagePipeline
from recipesync.core.models import Ingredient, Recipe, RecipeImage, RecipeTag, SyncStatus, Tag
from recipesync.core.recipes import RecipeBook
from recipesync.core.records import RecordStore
from recipesync.core.validation import ValidationError

from tests.conftest import OTHER_USER, TEST_USER
from tests.helpers import make_jpeg


@pytest.fixture
def soup(book: RecipeBook) -> Recipe:
    return book.create_recipe(TEST_USER, "Soup", servings=4, instructions="Chop\nBoil")


class TestRecipes:
    def test_create(self, book: RecipeBook, soup: Recipe) -> None:
        assert soup.name == "Soup"
        assert soup.servings == 4
        assert soup.steps == ["Chop", "Boil"]
        assert soup.is_approved is False
        assert soup.sync_status == SyncStatus.PENDING
        assert book.get_recipe(soup.id) == soup

    def test_name_is_stripped(self, book: RecipeBook) -> None:
        assert book.create_recipe(TEST_USER, "  Stew ").name == "Stew"

    @pytest.mark.parametrize(
        "fields",
        [
            {"name": ""},
            {"name": "Soup", "rating": 7},
            {"name": "Soup", "servings": 0},
            {"name": "Soup", "prep_time": -1},
            {"name": "Soup", "colour": "red"},
        ],
    )
    def test_invalid_fields(self, book: RecipeBook, fields: dict) -> None:
        name = fields.pop("name")
        with pytest.raises(ValidationError):
            book.create_recipe(TEST_USER, name, **fields)

    def test_update(self, book: RecipeBook, store: RecordStore, soup: Recipe) -> None:
        synced = store.mark_as_synced(soup, "r1")
        updated = book.update_recipe(synced, description="Warm", total_time=40, prep_time=10)
        assert updated.description == "Warm"
        assert updated.cooking_time == 30
        assert updated.sync_status == SyncStatus.PENDING

    def test_approve_and_rate(self, book: RecipeBook, soup: Recipe) -> None:
        approved = book.approve_recipe(soup)
        assert approved.is_approved is True
        assert book.rate_recipe(approved, 4.5).rating == 4.5

    def test_list_recipes(self, book: RecipeBook, soup: Recipe) -> None:
        book.create_recipe(TEST_USER, "Apple pie", is_approved=True)
        book.create_recipe(OTHER_USER, "Bread")
        book.delete_recipe(book.create_recipe(TEST_USER, "Gone"))

        assert [r.name for r in book.list_recipes(TEST_USER)] == ["Apple pie", "Soup"]
        assert [r.name for r in book.list_recipes(TEST_USER, approved=False)] == ["Soup"]

    def test_delete_without_cascade(self, book: RecipeBook, soup: Recipe) -> None:
        book.replace_ingredients(soup, [{"name": "water"}])
        book.delete_recipe(soup)
        assert book.get_recipe(soup.id).is_deleted is True
        assert len(book.ingredients_of(soup)) == 1

    def test_delete_cascade(
        self, book: RecipeBook, store: RecordStore, soup: Recipe
    ) -> None:
        book.replace_ingredients(soup, [{"name": "water"}, {"name": "salt"}])
        book.tag_recipe(soup, book.create_tag(TEST_USER, "quick"))
        book.set_image(soup, make_jpeg())

        book.delete_recipe_cascade(soup)

        assert book.get_recipe(soup.id).is_deleted is True
        assert book.ingredients_of(soup) == []
        assert store.find(RecipeTag, recipe_id=soup.id) == []
        assert book.image_of(soup) is None
        pending = store.pending(Ingredient, TEST_USER)
        assert len(pending) == 2
        assert all(i.is_deleted for i in pending)


class TestIngredients:
    def test_replace_numbers_from_one(self, book: RecipeBook, soup: Recipe) -> None:
        created = book.replace_ingredients(
            soup,
            [
                {"amount": 2, "unit": "cup", "name": "flour"},
                {"original_str": "a pinch of salt"},
            ],
        )
        assert [i.order for i in created] == [1, 2]
        assert created[0].original_str == "2 cup flour"
        assert created[1].display_name == "a pinch of salt"
        assert all(i.recipe_id == soup.id for i in created)
        assert all(i.user_id == TEST_USER for i in created)

    def test_replace_tombstones_old(
        self, book: RecipeBook, store: RecordStore, soup: Recipe
    ) -> None:
        old = book.replace_ingredients(soup, [{"name": "water"}])
        new = book.replace_ingredients(soup, [{"name": "stock"}, {"name": "salt"}])

        assert [i.name for i in book.ingredients_of(soup)] == ["stock", "salt"]
        assert store.get(Ingredient, old[0].id).is_deleted is True
        assert [i.order for i in new] == [1, 2]

    def test_unknown_field(self, book: RecipeBook, soup: Recipe) -> None:
        with pytest.raises(ValidationError):
            book.replace_ingredients(soup, [{"calories": 10}])
        assert book.ingredients_of(soup) == []

    def test_scaled_ingredients(self, book: RecipeBook, soup: Recipe) -> None:
        book.replace_ingredients(
            soup, [{"amount": 3, "name": "carrots"}, {"name": "salt"}, {"amount": 1, "name": "onion"}]
        )

        scaled = book.scaled_ingredients(soup, 2)

        assert [s["amount"] for s in scaled] == [1.5, None, 0.5]
        assert [s["scalable"] for s in scaled] == [True, False, True]
        assert scaled[0]["ingredient"].name == "carrots"

    def test_scaled_without_servings_is_identity(self, book: RecipeBook) -> None:
        recipe = book.create_recipe(TEST_USER, "Unknown size")
        book.replace_ingredients(recipe, [{"amount": 3, "name": "eggs"}])
        assert book.scaled_ingredients(recipe, 10)[0]["amount"] == 3


class TestTags:
    def test_create_appends(self, book: RecipeBook) -> None:
        first = book.create_tag(TEST_USER, "quick")
        second = book.create_tag(TEST_USER, "vegan")
        assert (first.order, second.order) == (1, 2)
        assert [t.name for t in book.list_tags(TEST_USER)] == ["quick", "vegan"]

    def test_invalid_name(self, book: RecipeBook) -> None:
        with pytest.raises(ValidationError):
            book.create_tag(TEST_USER, "   ")

    def test_tag_and_untag(self, book: RecipeBook, soup: Recipe) -> None:
        quick = book.create_tag(TEST_USER, "quick")
        link = book.tag_recipe(soup, quick)

        assert book.tag_recipe(soup, quick).id == link.id
        assert [t.id for t in book.tags_of(soup)] == [quick.id]

        assert book.untag_recipe(soup, quick) is True
        assert book.untag_recipe(soup, quick) is False
        assert book.tags_of(soup) == []

    def test_deleted_tag_is_hidden(
        self, book: RecipeBook, store: RecordStore, soup: Recipe
    ) -> None:
        quick = book.create_tag(TEST_USER, "quick")
        book.tag_recipe(soup, quick)
        store.mark_as_deleted(quick)
        assert book.tags_of(soup) == []


class TestImages:
    def test_set_image(self, book: RecipeBook, soup: Recipe, pipeline: ImagePipeline) -> None:
        image = book.set_image(soup, make_jpeg())

        assert image.sync_id == soup.sync_id
        assert image.has_image
        assert image.image_path == str(pipeline.image_path_for(soup.sync_id))
        assert image.source_digest
        assert image.sync_status == SyncStatus.PENDING
        assert book.image_of(soup) == image

    def test_unchanged_image_not_reprocessed(
        self, book: RecipeBook, soup: Recipe, pipeline: ImagePipeline, monkeypatch
    ) -> None:
        data = make_jpeg()
        first = book.set_image(soup, data)

        calls = []
        monkeypatch.setattr(pipeline, "process", lambda *a: calls.append(a))
        assert book.set_image(soup, data) == first
        assert calls == []

    def test_processing_is_gated_by_needs_processing(
        self, book: RecipeBook, soup: Recipe, pipeline: ImagePipeline, monkeypatch
    ) -> None:
        data = make_jpeg()
        book.set_image(soup, data)
        processed = pipeline.read_image(soup.sync_id)

        checks = []
        needs_processing = pipeline.needs_processing

        def gate(new, existing):
            checks.append((new, existing))
            return needs_processing(new, existing)

        monkeypatch.setattr(pipeline, "needs_processing", gate)
        monkeypatch.setattr(pipeline, "process", lambda *a: pytest.fail("reprocessed"))
        book.set_image(soup, data)

        assert checks == [(data, processed)]

    def test_replace_image(self, book: RecipeBook, soup: Recipe) -> None:
        first = book.set_image(soup, make_jpeg(color="red"))
        second = book.set_image(soup, make_jpeg(color="blue"))
        assert second.id == first.id
        assert second.source_digest != first.source_digest

    def test_failed_processing_stores_record_without_image(
        self, book: RecipeBook, soup: Recipe
    ) -> None:
        image = book.set_image(soup, b"not an image")
        assert image is not None
        assert image.has_image is False
        assert image.source_digest is None

    def test_clear_image(self, book: RecipeBook, soup: Recipe, pipeline: ImagePipeline) -> None:
        book.set_image(soup, make_jpeg())
        cleared = book.set_image(soup, None)
        assert cleared.has_image is False
        assert pipeline.read_image(soup.sync_id) is None

    def test_clear_without_image(self, book: RecipeBook, soup: Recipe) -> None:
        assert book.set_image(soup, None) is None

    def test_requires_pipeline(self, store: RecordStore) -> None:
        book = RecipeBook(store)
        recipe = book.create_recipe(TEST_USER, "Soup")
        with pytest.raises(RuntimeError):
            book.set_image(recipe, make_jpeg())


class TestClaimUnowned:
    def test_claims_live_unowned_records(self, book: RecipeBook, store: RecordStore) -> None:
        recipe = book.create_recipe(None, "Offline soup")
        book.replace_ingredients(recipe, [{"name": "water"}])
        tag = book.create_tag(None, "quick")
        store.mark_as_deleted(book.create_tag(None, "gone"))
        book.create_recipe(OTHER_USER, "Not mine")

        assert book.claim_unowned(TEST_USER) == 3

        assert store.get(Recipe, recipe.id).user_id == TEST_USER
        assert store.get(Tag, tag.id).user_id == TEST_USER
        assert {r.name for r in book.list_recipes(TEST_USER)} == {"Offline soup"}
        assert len(store.pending(Ingredient, TEST_USER)) == 1
        assert book.claim_unowned(TEST_USER) == 0

    def test_nothing_to_claim(self, book: RecipeBook) -> None:
        assert book.claim_unowned(TEST_USER) == 0
        assert book.store.find(RecipeImage) == []
