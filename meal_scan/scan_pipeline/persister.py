import asyncio
import logging
import time
from datetime import datetime
from typing import Optional
from uuid import uuid4

import numpy as np

from meal_scan.errors import StoreWriteError
from meal_scan.image_io import encode_jpeg
from meal_scan.models import FoodPrediction, MealEntry, MealType
from .nutrition import NutritionCatalog
from .storage import ImageStore, MealStore

logger = logging.getLogger(__name__)


def new_meal_id() -> str:
    return uuid4().hex


def build_scan_entry(
    prediction: FoodPrediction,
    meal_type: MealType,
    user_id: str,
    meal_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    image_url: Optional[str] = None,
) -> MealEntry:
    """MealEntry for a confirmed scan; nutrition comes from the classifier only."""
    return MealEntry(
        meal_id=meal_id or new_meal_id(),
        meal_name=prediction.label,
        food_label=prediction.label,
        meal_type=meal_type,
        nutrition=prediction.nutrition,
        timestamp=timestamp or datetime.now(),
        user_id=user_id,
        image_url=image_url,
        confidence=prediction.confidence,
        source="scan",
        nutrition_source="classifier",
    )


def build_manual_entry(
    catalog: NutritionCatalog,
    label: str,
    portion_index: int,
    meal_type: MealType,
    user_id: str,
    timestamp: Optional[datetime] = None,
) -> MealEntry:
    """
    MealEntry for the manual logging path; nutrition comes from one catalog portion.

    Raises KeyError for an unknown food and IndexError for an unknown portion.
    """
    item = catalog.get(label)
    if item is None:
        raise KeyError(f"Unknown food: {label}")
    portion = catalog.get_nutrition(label, portion_index)
    if portion is None:
        raise IndexError(f"Portion {portion_index} out of range for {label}")

    return MealEntry(
        meal_id=new_meal_id(),
        meal_name=item.display_name,
        food_label=item.label,
        meal_type=meal_type,
        portion_index=portion_index,
        portion_weight=portion.weight,
        nutrition=portion.to_nutrition(),
        timestamp=timestamp or datetime.now(),
        user_id=user_id,
        source="manual",
        nutrition_source="catalog",
    )


class MealPersister:
    """
    Uploads meal photos and writes MealEntry documents.

    Upload is best-effort: any failure is logged and the meal is saved
    without an image reference. A failed write raises StoreWriteError.
    """

    def __init__(self, meal_store: MealStore, image_store: Optional[ImageStore] = None):
        self.meal_store = meal_store
        self.image_store = image_store

    async def upload_image(self, entry: MealEntry, image: Optional[np.ndarray]) -> Optional[str]:
        if image is None or self.image_store is None:
            return None

        t0 = time.perf_counter()
        try:
            data = await asyncio.to_thread(encode_jpeg, image)
            url = await asyncio.to_thread(
                self.image_store.upload,
                entry.user_id,
                entry.date_string,
                entry.meal_id,
                data,
            )
        except Exception as e:
            logger.warning(
                "[PERSIST] Image upload failed for meal %s, saving without image: %s",
                entry.meal_id,
                e,
            )
            return None

        logger.info(
            "[PERSIST] Uploaded image for meal %s in %.1fms",
            entry.meal_id,
            (time.perf_counter() - t0) * 1000,
        )
        return url

    async def write(self, entry: MealEntry) -> MealEntry:
        t0 = time.perf_counter()
        try:
            path = await asyncio.to_thread(self.meal_store.put_meal, entry)
        except StoreWriteError:
            raise
        except Exception as e:
            logger.error("[PERSIST] Write failed for meal %s: %s", entry.meal_id, e)
            raise StoreWriteError() from e

        logger.info(
            "[PERSIST] Saved meal %s (%s) to %s in %.1fms",
            entry.meal_id,
            entry.meal_name,
            path,
            (time.perf_counter() - t0) * 1000,
        )
        return entry

    async def save(self, entry: MealEntry, image: Optional[np.ndarray] = None) -> MealEntry:
        """Upload (if there is an image and no URL yet), then write once."""
        if entry.image_url is None:
            url = await self.upload_image(entry, image)
            if url:
                entry = entry.model_copy(update={"image_url": url})
        return await self.write(entry)
