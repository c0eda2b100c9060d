"""Shopping list operations.

Items are ordinary sync records, so every change is pushed by the next
sync cycle. Adding an item that is already on the list (same name and
unit, not yet checked) adds to its amount instead of creating a duplicate.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .models import Recipe, ShoppingItem
from .recipes import RecipeBook
from .records import RecordStore
from .scaling import Number, scale_value
from .validation import ValidationError, validate_item_name

logger = logging.getLogger(__name__)


def _same_item(item: ShoppingItem, name: str, unit: Optional[str]) -> bool:
    return item.name.lower() == name.lower() and (item.unit or None) == (unit or None)


class ShoppingList:
    """Shopping list of one device store."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def items(self, owner: Optional[str]) -> List[ShoppingItem]:
        """Live items, unchecked first, then in list order."""
        items = self.store.find(ShoppingItem, order_by=["order", "id"], user_id=owner)
        return sorted(items, key=lambda i: i.is_checked)

    def add_item(
        self,
        owner: Optional[str],
        name: str,
        amount: Optional[Number] = None,
        unit: Optional[str] = None,
        item_type: Optional[str] = None,
    ) -> ShoppingItem:
        """Add an item, merging it into a matching unchecked item.

        Amounts are summed when both are known; an item without an amount
        merges into the existing entry unchanged.

        Raises:
            ValidationError: If the name is empty or the amount negative
        """
        name = validate_item_name(name)
        if amount is not None and amount < 0:
            raise ValidationError("amount", "cannot be negative")

        existing = self.store.find(ShoppingItem, user_id=owner, is_checked=0)
        for item in existing:
            if not _same_item(item, name, unit):
                continue
            if amount is None:
                return item

            def add(i: ShoppingItem) -> None:
                i.amount = scale_value((i.amount or 0) + amount, 1.0)

            logger.debug(f"Merged {name} into shopping item {item.id}")
            return self.store.update(item, add)

        everything = self.store.find(ShoppingItem, user_id=owner)
        position = max((i.order for i in everything), default=0) + 1

        def init(item: ShoppingItem) -> None:
            item.name = name
            item.amount = amount
            item.unit = unit
            item.type = item_type
            item.order = position

        return self.store.create(ShoppingItem, owner, init)

    def add_recipe(
        self,
        book: RecipeBook,
        recipe: Recipe,
        servings: Optional[int] = None,
        only: Optional[Iterable[str]] = None,
    ) -> List[ShoppingItem]:
        """Add a recipe's ingredients, scaled to a servings count.

        Args:
            book: Recipe book the ingredients are read from
            recipe: Recipe to shop for
            servings: Servings to scale to (None keeps the recipe's own)
            only: Ingredient ids to add (all by default)

        Returns:
            The added or merged items
        """
        wanted = set(only) if only is not None else None
        added = []
        with self.store.batch():
            for entry in book.scaled_ingredients(recipe, servings):
                ingredient = entry["ingredient"]
                if wanted is not None and ingredient.id not in wanted:
                    continue
                name = ingredient.display_name.strip()
                if not name:
                    continue
                added.append(
                    self.add_item(
                        recipe.user_id, name, entry["amount"], ingredient.unit, ingredient.type
                    )
                )
        logger.info(f"Added {len(added)} item(s) from recipe {recipe.id} to the shopping list")
        return added

    def set_checked(self, item: ShoppingItem, checked: bool = True) -> ShoppingItem:
        def mark(i: ShoppingItem) -> None:
            i.is_checked = checked

        return self.store.update(item, mark)

    def remove(self, item: ShoppingItem) -> ShoppingItem:
        return self.store.mark_as_deleted(item)

    def clear(self, owner: Optional[str], checked_only: bool = False) -> int:
        """Tombstone every item (or only the checked ones).

        Returns:
            Number of items removed
        """
        where = {"is_checked": 1} if checked_only else {}
        items = self.store.find(ShoppingItem, user_id=owner, **where)
        with self.store.batch():
            for item in items:
                self.store.mark_as_deleted(item)
        return len(items)
