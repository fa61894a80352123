import json
from datetime import datetime

import pytest

from meal_scan.errors import ImageUploadError, StoreWriteError
from meal_scan.models import MealEntry, MealType, NutritionData
from meal_scan.scan_pipeline.storage import (
    FileImageStore,
    FileMealStore,
    InMemoryImageStore,
    InMemoryMealStore,
    meal_document_path,
    meal_photo_path,
)


def _entry(meal_id="m1", hour=12, user_id="user-1") -> MealEntry:
    return MealEntry(
        meal_id=meal_id,
        meal_name="Banana",
        meal_type=MealType.lunch,
        nutrition=NutritionData(calories=105, carbs=27.0),
        timestamp=datetime(2024, 5, 3, hour, 30),
        user_id=user_id,
    )


def test_paths():
    assert meal_document_path("u", "2024-05-03", "m1") == "users/u/healthData/2024-05-03/meals/m1"
    assert meal_photo_path("u", "2024-05-03", "m1") == "meal_photos/u/2024-05-03/m1.jpg"


def test_date_string_follows_timestamp():
    assert _entry().date_string == "2024-05-03"


def test_in_memory_store_overwrites_same_meal_id():
    store = InMemoryMealStore()
    store.put_meal(_entry(hour=12))
    store.put_meal(_entry(hour=13))
    store.put_meal(_entry(meal_id="m0", hour=8))

    meals = store.list_meals("user-1", "2024-05-03")
    assert [m.meal_id for m in meals] == ["m0", "m1"]
    assert meals[1].timestamp.hour == 13
    assert store.list_meals("user-2", "2024-05-03") == []


def test_in_memory_image_store():
    store = InMemoryImageStore()
    url = store.upload("u", "2024-05-03", "m1", b"jpeg")
    assert url == "memory://meal_photos/u/2024-05-03/m1.jpg"
    assert store.blobs["meal_photos/u/2024-05-03/m1.jpg"] == b"jpeg"


def test_file_store_round_trip(tmp_path):
    store = FileMealStore(str(tmp_path))
    path = store.put_meal(_entry())
    store.put_meal(_entry(meal_id="m0", hour=8))

    assert path == "users/user-1/healthData/2024-05-03/meals/m1"
    doc = tmp_path / (path + ".json")
    assert json.loads(doc.read_text(encoding="utf-8"))["meal_type"] == "Lunch"

    meals = store.list_meals("user-1", "2024-05-03")
    assert [m.meal_id for m in meals] == ["m0", "m1"]
    assert meals[1] == _entry()
    assert store.list_meals("user-1", "2024-05-04") == []


def test_file_store_skips_unreadable_documents(tmp_path):
    store = FileMealStore(str(tmp_path))
    store.put_meal(_entry())
    bad = tmp_path / "users/user-1/healthData/2024-05-03/meals/broken.json"
    bad.write_text("{not json", encoding="utf-8")

    assert [m.meal_id for m in store.list_meals("user-1", "2024-05-03")] == ["m1"]


def test_file_store_rejects_path_segments(tmp_path):
    store = FileMealStore(str(tmp_path))
    with pytest.raises(ValueError):
        store.put_meal(_entry(user_id="../escape"))
    with pytest.raises(ValueError):
        store.list_meals("user-1", "..")


def test_file_store_write_error(tmp_path):
    blocker = tmp_path / "users"
    blocker.write_text("not a directory", encoding="utf-8")
    store = FileMealStore(str(tmp_path))
    with pytest.raises(StoreWriteError):
        store.put_meal(_entry())


def test_file_image_store(tmp_path):
    store = FileImageStore(str(tmp_path))
    url = store.upload("u", "2024-05-03", "m1", b"jpeg")
    assert url.startswith("file://")
    assert (tmp_path / "meal_photos/u/2024-05-03/m1.jpg").read_bytes() == b"jpeg"

    with pytest.raises(ImageUploadError):
        store.upload("u", "2024-05-03", "m2", b"")
