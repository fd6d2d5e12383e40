"""Upper limits used to normalize raw sensor readings."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Mapping, Optional

from errors import UnknownCategoryError
from models.twins import Category

DEFAULT_UPPER_LIMITS: Mapping[Category, float] = MappingProxyType(
    {
        Category.temperature: 100.0,
        Category.co: 4.5,
        Category.no2: 50.0,
        Category.vehicle_count: 800.0,
        Category.truck_count: 160.0,
        Category.vibration: 0.3,
        Category.deflection: 12.0,
    }
)


class ThresholdTable:
    """Static category to upper-limit lookup."""

    def __init__(self, limits: Optional[Mapping[Category, float]] = None) -> None:
        self._limits: Dict[Category, float] = dict(
            DEFAULT_UPPER_LIMITS if limits is None else limits
        )

    def upper_limit(self, category: Category | str) -> float:
        try:
            key = Category(category)
        except ValueError as exc:
            raise UnknownCategoryError(category) from exc
        try:
            return self._limits[key]
        except KeyError as exc:
            raise UnknownCategoryError(category) from exc

    def normalize(self, category: Category | str, value: float) -> float:
        return value / self.upper_limit(category)
