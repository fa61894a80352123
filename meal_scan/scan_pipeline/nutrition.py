"""
Bundled food / portion nutrition catalog.

The catalog is a CSV with one row per (food, portion):

    label, weight, calories, protein, carbohydrates, fats, fiber, sugars, sodium

Rows are grouped by label into FoodItem objects whose portions are sorted by
weight. The catalog is read-only reference data.
"""

import csv
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional

from meal_scan.config import NUTRITION_CSV_PATH
from meal_scan.models import NutritionData
from meal_scan.utils import clean_food_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NutritionEntry:
    label: str
    weight: float
    calories: int
    protein: float
    carbohydrates: float
    fats: float
    fiber: float
    sugars: float
    sodium: float

    @classmethod
    def from_row(cls, row: List[str]) -> Optional["NutritionEntry"]:
        """Parse a CSV row; returns None for short or non-numeric rows."""
        if len(row) < 9:
            return None
        try:
            return cls(
                label=row[0].replace('"', "").strip(),
                weight=float(row[1]),
                calories=int(round(float(row[2]))),
                protein=float(row[3]),
                carbohydrates=float(row[4]),
                fats=float(row[5]),
                fiber=float(row[6]),
                sugars=float(row[7]),
                sodium=float(row[8]),
            )
        except ValueError:
            return None

    def to_nutrition(self) -> NutritionData:
        return NutritionData(
            calories=self.calories,
            protein=self.protein,
            fat=self.fats,
            carbs=self.carbohydrates,
            fiber=self.fiber,
            sugars=self.sugars,
            sodium=self.sodium,
        )


@dataclass(frozen=True)
class FoodItem:
    label: str
    portions: tuple

    @property
    def display_name(self) -> str:
        return self.label.replace("_", " ").title()

    @property
    def default_portion_index(self) -> int:
        return len(self.portions) // 2


# Used when a predicted label has no catalog match
DEFAULT_ENTRY = NutritionEntry(
    label="Unknown Food",
    weight=100,
    calories=200,
    protein=8.0,
    carbohydrates=25.0,
    fats=6.0,
    fiber=2.0,
    sugars=3.0,
    sodium=200.0,
)


class NutritionCatalog:
    def __init__(self, entries: List[NutritionEntry]):
        grouped: Dict[str, List[NutritionEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.label, []).append(entry)

        self._items: Dict[str, FoodItem] = {
            label: FoodItem(label=label, portions=tuple(sorted(group, key=lambda e: e.weight)))
            for label, group in grouped.items()
        }

    @classmethod
    def from_csv(cls, path: str = NUTRITION_CSV_PATH) -> "NutritionCatalog":
        entries: List[NutritionEntry] = []
        with open(path, "r", encoding="utf-8", newline="") as f:
            reader = csv.reader(f)
            next(reader, None)  # header
            for row in reader:
                if not row:
                    continue
                entry = NutritionEntry.from_row(row)
                if entry is not None:
                    entries.append(entry)

        catalog = cls(entries)
        logger.info(
            "[CATALOG] Loaded %s food items with %s total entries from %s",
            len(catalog.items),
            len(entries),
            path,
        )
        return catalog

    @property
    def items(self) -> List[FoodItem]:
        return sorted(self._items.values(), key=lambda item: item.display_name)

    def get(self, label: str) -> Optional[FoodItem]:
        return self._items.get(label)

    def search(self, query: str) -> List[FoodItem]:
        query = (query or "").strip().lower()
        if not query:
            return self.items
        return [
            item
            for item in self.items
            if query in item.display_name.lower() or query in item.label.lower()
        ]

    def get_nutrition(self, label: str, portion_index: int) -> Optional[NutritionEntry]:
        item = self._items.get(label)
        if item is None or portion_index < 0 or portion_index >= len(item.portions):
            return None
        return item.portions[portion_index]

    def match(self, food_label: str) -> Optional[FoodItem]:
        """
        Find the catalog item for a free-text food label.

        Exact label / display name first, then any word of the label matching a
        word of a catalog label.
        """
        wanted = clean_food_identifier(food_label)
        if not wanted:
            return None

        for item in self.items:
            if item.label.lower() == wanted.replace(" ", "_") or item.display_name.lower() == wanted:
                return item

        search_words = [w for w in wanted.split(" ") if w]
        for item in self.items:
            item_words = item.label.lower().split("_")
            if any(word in item_words for word in search_words):
                return item

        return None

    def estimate_for_label(self, food_label: str) -> NutritionEntry:
        """Middle portion of the matched item, or DEFAULT_ENTRY."""
        item = self.match(food_label)
        if item is None:
            logger.warning("[CATALOG] No nutrition match for '%s', using default values", food_label)
            return DEFAULT_ENTRY
        return item.portions[item.default_portion_index]


@lru_cache
def get_default_catalog() -> NutritionCatalog:
    return NutritionCatalog.from_csv(NUTRITION_CSV_PATH)
