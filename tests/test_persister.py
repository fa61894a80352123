import asyncio
from datetime import datetime

import pytest

from conftest import FailingImageStore, FlakyMealStore, make_image
from meal_scan.errors import StoreWriteError
from meal_scan.models import MealType
from meal_scan.scan_pipeline.persister import MealPersister, build_manual_entry, build_scan_entry


def test_scan_entry_copies_classifier_nutrition(banana):
    entry = build_scan_entry(
        banana, MealType.lunch, "user-1", meal_id="m1", timestamp=datetime(2024, 5, 3, 12, 0)
    )
    assert entry.meal_id == "m1"
    assert entry.meal_name == "Banana"
    assert entry.nutrition == banana.nutrition
    assert entry.confidence == banana.confidence
    assert entry.date_string == "2024-05-03"
    assert entry.source == "scan"
    assert entry.nutrition_source == "classifier"
    assert entry.portion_index is None


def test_manual_entry_uses_catalog_portion(catalog):
    entry = build_manual_entry(catalog, "banana", 2, MealType.breakfast, "user-1")
    assert entry.meal_name == "Banana"
    assert entry.portion_index == 2
    assert entry.portion_weight == 150
    assert entry.nutrition.calories == 134
    assert entry.source == "manual"
    assert entry.nutrition_source == "catalog"
    assert entry.confidence is None


def test_manual_entry_rejects_unknown_food_and_portion(catalog):
    with pytest.raises(KeyError):
        build_manual_entry(catalog, "durian", 0, MealType.snack, "user-1")
    with pytest.raises(IndexError):
        build_manual_entry(catalog, "banana", 7, MealType.snack, "user-1")


def test_save_uploads_jpeg_then_writes(banana, persister, meal_store, image_store):
    entry = build_scan_entry(banana, MealType.lunch, "user-1")
    saved = asyncio.run(persister.save(entry, make_image(64, 48)))

    assert saved.image_url == f"memory://meal_photos/user-1/{entry.date_string}/{entry.meal_id}.jpg"
    blob = next(iter(image_store.blobs.values()))
    assert blob[:2] == b"\xff\xd8"
    assert meal_store.list_meals("user-1", entry.date_string) == [saved]


def test_save_without_image_store(banana, meal_store):
    persister = MealPersister(meal_store)
    entry = build_scan_entry(banana, MealType.lunch, "user-1")
    saved = asyncio.run(persister.save(entry, make_image(64, 48)))
    assert saved.image_url is None


def test_upload_failure_is_not_fatal(banana, meal_store):
    persister = MealPersister(meal_store, FailingImageStore())
    entry = build_scan_entry(banana, MealType.lunch, "user-1")
    saved = asyncio.run(persister.save(entry, make_image(64, 48)))
    assert saved.image_url is None
    assert len(meal_store.list_meals("user-1", entry.date_string)) == 1


def test_write_failure_raises(banana):
    persister = MealPersister(FlakyMealStore(failures=1))
    entry = build_scan_entry(banana, MealType.lunch, "user-1")
    with pytest.raises(StoreWriteError):
        asyncio.run(persister.write(entry))


def test_unexpected_store_error_becomes_write_error(banana):
    class BrokenStore(FlakyMealStore):
        def put_meal(self, entry):
            raise ConnectionError("offline")

    persister = MealPersister(BrokenStore())
    entry = build_scan_entry(banana, MealType.lunch, "user-1")
    with pytest.raises(StoreWriteError) as exc:
        asyncio.run(persister.write(entry))
    assert exc.value.message == "Failed to save meal. Please try again."
