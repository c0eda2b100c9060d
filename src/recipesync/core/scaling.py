"""Quantity scaling for recipe servings.

Pure functions, no state. Non-positive and missing quantities are never
scaled ("a pinch of salt" stays a pinch of salt).
"""

from __future__ import annotations

import math
from typing import Optional, Union

Number = Union[int, float]

__all__ = [
    "calculate_scale_factor",
    "scale_value",
    "is_ingredient_scalable",
    "format_scaled_value",
]


def calculate_scale_factor(
    original_servings: Optional[Number], current_servings: Optional[Number]
) -> float:
    """Get the factor that turns original servings into current servings.

    Returns:
        current / original, or 1.0 if either count is unknown or original <= 0
    """
    if original_servings is None or original_servings <= 0:
        return 1.0
    if current_servings is None:
        return 1.0
    return current_servings / original_servings


def scale_value(
    value: Optional[Number], scale_factor: float, precision: int = 2
) -> Optional[Number]:
    """Scale a quantity, rounding half up to `precision` decimal places.

    None and non-positive values are returned unchanged.
    """
    if value is None or value <= 0:
        return value
    multiplier = 10 ** precision
    scaled = math.floor(value * scale_factor * multiplier + 0.5) / multiplier
    if scaled == int(scaled):
        return int(scaled)
    return scaled


def is_ingredient_scalable(amount: Optional[Number]) -> bool:
    return amount is not None and amount > 0


def format_scaled_value(value: Optional[Number]) -> str:
    """Format a scaled quantity for display.

    Whole numbers print without decimals; everything else prints with at
    most two decimals and no trailing zeros.
    """
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}".rstrip("0").rstrip(".")
