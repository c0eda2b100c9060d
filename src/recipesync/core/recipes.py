"""Entity-level operations on recipes, ingredients, tags and images.

All writes go through RecordStore, so every change is stamped pending and
picked up by the next sync. Cascades are explicit: delete_recipe only
tombstones the recipe, delete_recipe_cascade also tombstones its
ingredients, tag links and image.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .errors import TransformError
from .image_pipeline import ImagePipeline, RawImage
from .models import Ingredient, Recipe, RecipeImage, RecipeTag, SYNC_MODELS, SyncRecord, Tag
from .records import RecordStore
from .scaling import calculate_scale_factor, is_ingredient_scalable, scale_value
from .validation import (
    ValidationError,
    validate_minutes,
    validate_rating,
    validate_recipe_name,
    validate_servings,
    validate_tag_name,
)

logger = logging.getLogger(__name__)

RECIPE_FIELDS = (
    "name",
    "description",
    "instructions",
    "notes",
    "nutrition",
    "source",
    "video_url",
    "rating",
    "prep_time",
    "total_time",
    "servings",
    "is_approved",
)
INGREDIENT_FIELDS = ("amount", "unit", "name", "type", "original_str")


def _validated_recipe_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(RECIPE_FIELDS)
    if unknown:
        raise ValidationError(sorted(unknown)[0], "unknown recipe field")
    values = dict(fields)
    if "name" in values:
        values["name"] = validate_recipe_name(values["name"])
    if "rating" in values:
        values["rating"] = validate_rating(values["rating"])
    for key in ("prep_time", "total_time"):
        if key in values:
            values[key] = validate_minutes(values[key], key)
    if "servings" in values:
        values["servings"] = validate_servings(values["servings"])
    if "instructions" in values and values["instructions"] is None:
        values["instructions"] = ""
    if "is_approved" in values:
        values["is_approved"] = bool(values["is_approved"])
    return values


class RecipeBook:
    """Recipe operations for one device store.

    Attributes:
        store: Record store all writes go through
        pipeline: Image pipeline used by set_image
    """

    def __init__(self, store: RecordStore, pipeline: Optional[ImagePipeline] = None) -> None:
        self.store = store
        self.pipeline = pipeline

    # ===== Recipes =====

    def create_recipe(self, owner: Optional[str], name: str, **fields: Any) -> Recipe:
        """Create a recipe.

        Args:
            owner: Owning user (None for an unclaimed recipe)
            name: Recipe name
            **fields: Any other Recipe field (description, servings, ...)

        Raises:
            ValidationError: If a field value is invalid
        """
        values = _validated_recipe_fields({"name": name, **fields})

        def init(recipe: Recipe) -> None:
            for key, value in values.items():
                setattr(recipe, key, value)

        recipe = self.store.create(Recipe, owner, init)
        logger.info(f"Created recipe {recipe.id}: {recipe.name}")
        return recipe

    def update_recipe(self, recipe: Recipe, **fields: Any) -> Recipe:
        values = _validated_recipe_fields(fields)

        def mutate(r: Recipe) -> None:
            for key, value in values.items():
                setattr(r, key, value)

        return self.store.update(recipe, mutate)

    def approve_recipe(self, recipe: Recipe) -> Recipe:
        """Approve a machine-imported recipe."""
        return self.update_recipe(recipe, is_approved=True)

    def rate_recipe(self, recipe: Recipe, rating: Optional[float]) -> Recipe:
        return self.update_recipe(recipe, rating=rating)

    def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        return self.store.get(Recipe, recipe_id)

    def list_recipes(self, owner: Optional[str], approved: Optional[bool] = None) -> List[Recipe]:
        """Get live recipes of a user, by name."""
        where: Dict[str, Any] = {"user_id": owner}
        if approved is not None:
            where["is_approved"] = int(approved)
        return self.store.find(Recipe, order_by=["name", "id"], **where)

    def delete_recipe(self, recipe: Recipe) -> Recipe:
        """Tombstone a recipe only. Ingredients, tag links and image are kept."""
        return self.store.mark_as_deleted(recipe)

    def delete_recipe_cascade(self, recipe: Recipe) -> Recipe:
        """Tombstone a recipe with its ingredients, tag links and image."""
        with self.store.batch():
            for ingredient in self.ingredients_of(recipe):
                self.store.mark_as_deleted(ingredient)
            for link in self.store.find(RecipeTag, recipe_id=recipe.id):
                self.store.mark_as_deleted(link)
            image = self.image_of(recipe)
            if image is not None:
                self.store.mark_as_deleted(image)
            deleted = self.store.mark_as_deleted(recipe)
        logger.info(f"Deleted recipe {recipe.id} with its dependents")
        return deleted

    # ===== Ingredients =====

    def ingredients_of(self, recipe: Recipe) -> List[Ingredient]:
        return self.store.find(Ingredient, order_by=["order", "id"], recipe_id=recipe.id)

    def replace_ingredients(
        self, recipe: Recipe, ingredients: Sequence[Dict[str, Any]]
    ) -> List[Ingredient]:
        """Replace all ingredients of a recipe in one batch.

        Existing ingredients are tombstoned and the new ones are numbered
        1..n in the given order.

        Args:
            recipe: Owning recipe
            ingredients: Dicts with any of amount, unit, name, type, original_str

        Returns:
            The new ingredients, in order
        """
        for item in ingredients:
            unknown = set(item) - set(INGREDIENT_FIELDS)
            if unknown:
                raise ValidationError(sorted(unknown)[0], "unknown ingredient field")

        created: List[Ingredient] = []
        with self.store.batch():
            for old in self.ingredients_of(recipe):
                self.store.mark_as_deleted(old)
            for position, item in enumerate(ingredients, start=1):
                init = self._ingredient_initializer(recipe, position, item)
                created.append(self.store.create(Ingredient, recipe.user_id, init))
        logger.debug(f"Replaced ingredients of recipe {recipe.id} ({len(created)} items)")
        return created

    @staticmethod
    def _ingredient_initializer(recipe: Recipe, position: int, item: Dict[str, Any]):
        def init(ingredient: Ingredient) -> None:
            ingredient.recipe_id = recipe.id
            ingredient.order = position
            for key, value in item.items():
                setattr(ingredient, key, value)
            ingredient.name = ingredient.name or ""
            if not ingredient.original_str:
                parts = (item.get("amount"), item.get("unit"), item.get("name"))
                ingredient.original_str = " ".join(str(p) for p in parts if p)

        return init

    def scaled_ingredients(
        self, recipe: Recipe, servings: Optional[int]
    ) -> List[Dict[str, Any]]:
        """Get a recipe's ingredients with amounts scaled to a servings count.

        Returns:
            Dicts with ingredient, amount (scaled or original) and scalable
        """
        factor = calculate_scale_factor(recipe.servings, servings)
        scaled = []
        for ingredient in self.ingredients_of(recipe):
            scalable = is_ingredient_scalable(ingredient.amount)
            scaled.append(
                {
                    "ingredient": ingredient,
                    "amount": scale_value(ingredient.amount, factor) if scalable else ingredient.amount,
                    "scalable": scalable,
                }
            )
        return scaled

    # ===== Tags =====

    def create_tag(self, owner: Optional[str], name: str, order: Optional[int] = None) -> Tag:
        """Create a tag, appended after the user's existing tags by default."""
        name = validate_tag_name(name)
        if order is None:
            existing = self.store.find(Tag, user_id=owner)
            order = max((t.order for t in existing), default=0) + 1

        def init(tag: Tag) -> None:
            tag.name = name
            tag.order = order

        return self.store.create(Tag, owner, init)

    def list_tags(self, owner: Optional[str]) -> List[Tag]:
        return self.store.find(Tag, order_by=["order", "name"], user_id=owner)

    def tag_recipe(self, recipe: Recipe, tag: Tag) -> RecipeTag:
        """Link a tag to a recipe. Linking twice returns the existing link."""
        existing = self.store.find(RecipeTag, recipe_id=recipe.id, tag_id=tag.id)
        if existing:
            return existing[0]

        def init(link: RecipeTag) -> None:
            link.recipe_id = recipe.id
            link.tag_id = tag.id

        return self.store.create(RecipeTag, recipe.user_id, init)

    def untag_recipe(self, recipe: Recipe, tag: Tag) -> bool:
        """Remove a tag from a recipe.

        Returns:
            True if a link was removed
        """
        links = self.store.find(RecipeTag, recipe_id=recipe.id, tag_id=tag.id)
        with self.store.batch():
            for link in links:
                self.store.mark_as_deleted(link)
        return bool(links)

    def tags_of(self, recipe: Recipe) -> List[Tag]:
        tags = []
        for link in self.store.find(RecipeTag, recipe_id=recipe.id):
            tag = self.store.get(Tag, link.tag_id)
            if tag is not None and not tag.is_deleted:
                tags.append(tag)
        return sorted(tags, key=lambda t: (t.order, t.name))

    # ===== Images =====

    def image_of(self, recipe: Recipe) -> Optional[RecipeImage]:
        images = self.store.find(RecipeImage, sync_id=recipe.sync_id, user_id=recipe.user_id)
        return images[0] if images else None

    def set_image(self, recipe: Recipe, image_data: Optional[RawImage]) -> Optional[RecipeImage]:
        """Attach (or replace, or clear) the image of a recipe.

        Unchanged image data is not reprocessed. A processing failure stores
        the record without an image instead of failing.

        Args:
            recipe: Owning recipe; its sync_id is the logical image id
            image_data: Raw image data, or None to clear the image

        Returns:
            The RecipeImage record, or None if there was nothing to store
        """
        if self.pipeline is None:
            raise RuntimeError("RecipeBook has no image pipeline")

        existing = self.image_of(recipe)
        if image_data is None:
            if existing is None:
                return None
            self.pipeline.remove_artifacts(recipe.sync_id)

            def clear(image: RecipeImage) -> None:
                image.image_path = None
                image.thumbnail_path = None
                image.source_digest = None

            return self.store.update(existing, clear)

        if (
            existing is not None
            and existing.has_image
            and not self.pipeline.needs_processing_for(
                image_data, recipe.sync_id, existing.source_digest
            )
        ):
            logger.debug(f"Image for recipe {recipe.id} unchanged, not reprocessed")
            return existing

        try:
            digest: Optional[str] = self.pipeline.source_digest(image_data)
        except TransformError:
            digest = None
        artifacts = self.pipeline.process(image_data, recipe.sync_id)

        def apply(image: RecipeImage) -> None:
            image.sync_id = recipe.sync_id
            image.image_path = artifacts.image_path
            image.thumbnail_path = artifacts.thumbnail_path
            image.source_digest = digest if artifacts.ok else None
            image.needs_download = False

        if existing is None:
            return self.store.create(RecipeImage, recipe.user_id, apply)
        return self.store.update(existing, apply)

    # ===== Ownership =====

    def claim_unowned(self, user: str) -> int:
        """Assign every live unowned record to a user and mark it pending.

        Returns:
            Number of records claimed
        """
        claimed = 0
        with self.store.batch():
            for model in SYNC_MODELS:
                for record in self.store.find(model, user_id=None):

                    def assign(r: SyncRecord) -> None:
                        r.user_id = user

                    self.store.update(record, assign)
                    claimed += 1
        if claimed:
            logger.info(f"Claimed {claimed} unowned record(s) for {user}")
        return claimed
