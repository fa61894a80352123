"""
Persistent store collaborators.

Meal documents live at   users/{user_id}/healthData/{YYYY-MM-DD}/meals/{meal_id}
Meal photos live at      meal_photos/{user_id}/{YYYY-MM-DD}/{meal_id}.jpg

Writes are keyed by meal_id: writing the same entry twice leaves one document.
"""

import abc
import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from meal_scan.config import DATA_ROOT
from meal_scan.errors import ImageUploadError, StoreWriteError
from meal_scan.models import MealEntry

logger = logging.getLogger(__name__)


def meal_document_path(user_id: str, date_string: str, meal_id: str) -> str:
    return f"users/{user_id}/healthData/{date_string}/meals/{meal_id}"


def meal_photo_path(user_id: str, date_string: str, meal_id: str) -> str:
    return f"meal_photos/{user_id}/{date_string}/{meal_id}.jpg"


def check_path_segment(value: str, name: str) -> str:
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise ValueError(f"Invalid {name}: {value!r}")
    return value


class MealStore(abc.ABC):
    @abc.abstractmethod
    def put_meal(self, entry: MealEntry) -> str:
        """Create (or overwrite) the document for entry.meal_id; returns its path."""

    @abc.abstractmethod
    def list_meals(self, user_id: str, date_string: str) -> List[MealEntry]:
        """Meals for one user and day, oldest first."""


class ImageStore(abc.ABC):
    @abc.abstractmethod
    def upload(self, user_id: str, date_string: str, meal_id: str, data: bytes) -> str:
        """Store a JPEG blob and return a retrievable URL."""


class InMemoryMealStore(MealStore):
    def __init__(self):
        self._docs: Dict[str, MealEntry] = {}
        self._lock = threading.Lock()

    def put_meal(self, entry: MealEntry) -> str:
        path = meal_document_path(entry.user_id, entry.date_string, entry.meal_id)
        with self._lock:
            self._docs[path] = entry
        return path

    def list_meals(self, user_id: str, date_string: str) -> List[MealEntry]:
        prefix = f"users/{user_id}/healthData/{date_string}/meals/"
        with self._lock:
            meals = [doc for path, doc in self._docs.items() if path.startswith(prefix)]
        return sorted(meals, key=lambda m: m.timestamp)


class InMemoryImageStore(ImageStore):
    def __init__(self, base_url: str = "memory://"):
        self.base_url = base_url
        self.blobs: Dict[str, bytes] = {}

    def upload(self, user_id: str, date_string: str, meal_id: str, data: bytes) -> str:
        path = meal_photo_path(user_id, date_string, meal_id)
        self.blobs[path] = data
        return f"{self.base_url}{path}"


class FileMealStore(MealStore):
    """JSON document per meal under DATA_ROOT."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or DATA_ROOT)

    def _doc_file(self, user_id: str, date_string: str, meal_id: str) -> Path:
        for value, name in ((user_id, "user_id"), (date_string, "date"), (meal_id, "meal_id")):
            check_path_segment(value, name)
        return self.root / (meal_document_path(user_id, date_string, meal_id) + ".json")

    def put_meal(self, entry: MealEntry) -> str:
        fp = self._doc_file(entry.user_id, entry.date_string, entry.meal_id)
        tmp = fp.with_suffix(".json.tmp")
        try:
            fp.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, fp)
        except OSError as e:
            logger.error("[STORE] Failed to write %s: %s", fp, e)
            raise StoreWriteError() from e
        return meal_document_path(entry.user_id, entry.date_string, entry.meal_id)

    def list_meals(self, user_id: str, date_string: str) -> List[MealEntry]:
        check_path_segment(user_id, "user_id")
        check_path_segment(date_string, "date")
        meals_dir = self.root / "users" / user_id / "healthData" / date_string / "meals"
        if not meals_dir.is_dir():
            return []

        meals: List[MealEntry] = []
        for fp in sorted(meals_dir.glob("*.json")):
            try:
                meals.append(MealEntry.model_validate(json.loads(fp.read_text(encoding="utf-8"))))
            except (OSError, ValueError) as e:
                logger.warning("[STORE] Skipping unreadable meal document %s: %s", fp, e)
        return sorted(meals, key=lambda m: m.timestamp)


class FileImageStore(ImageStore):
    """JPEG blobs under DATA_ROOT; URLs are file:// URIs."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or DATA_ROOT)

    def upload(self, user_id: str, date_string: str, meal_id: str, data: bytes) -> str:
        for value, name in ((user_id, "user_id"), (date_string, "date"), (meal_id, "meal_id")):
            check_path_segment(value, name)
        if not data:
            raise ImageUploadError("Empty image data")

        fp = self.root / meal_photo_path(user_id, date_string, meal_id)
        try:
            fp.parent.mkdir(parents=True, exist_ok=True)
            fp.write_bytes(data)
        except OSError as e:
            logger.error("[STORE] Failed to upload %s: %s", fp, e)
            raise ImageUploadError() from e
        return fp.resolve().as_uri()
