import asyncio
from typing import List, Optional

import numpy as np
import pytest

from meal_scan.errors import CaptureFailed, PermissionDenied, StoreWriteError
from meal_scan.models import CapturedFrame, ClassificationRequest, FoodPrediction, NutritionData
from meal_scan.scan_pipeline.classifier import FoodClassifier
from meal_scan.scan_pipeline.nutrition import NutritionCatalog, get_default_catalog
from meal_scan.scan_pipeline.persister import MealPersister
from meal_scan.scan_pipeline.storage import InMemoryImageStore, InMemoryMealStore


BANANA_NUTRITION = NutritionData(
    calories=105, protein=1.3, fat=0.4, carbs=27.0, fiber=3.1, sugars=14.4, sodium=1.0
)


def make_image(w: int = 1170, h: int = 2532) -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 255, size=(h, w, 3), dtype=np.uint8)


def make_frame(w: int = 1170, h: int = 2532, **kwargs) -> CapturedFrame:
    kwargs.setdefault("screen_size", (390.0, 844.0))
    kwargs.setdefault("frame_side", 280.0)
    return CapturedFrame(image=make_image(w, h), **kwargs)


class FakeClassifier(FoodClassifier):
    """Returns (or raises) queued results in order; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.requests: List[ClassificationRequest] = []

    def classify(self, request: ClassificationRequest) -> FoodPrediction:
        self.requests.append(request)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


class BlockingClassifier(FoodClassifier):
    """classify_async waits until release() is called."""

    def __init__(self, result):
        self.result = result
        self.calls = 0
        self.started = asyncio.Event()
        self._release = asyncio.Event()

    def classify(self, request):
        raise AssertionError("sync path not used")

    def release(self) -> None:
        self._release.set()

    async def classify_async(self, request):
        self.calls += 1
        self.started.set()
        await self._release.wait()
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakeCaptureSource:
    def __init__(self, frame: Optional[CapturedFrame] = None, denied: bool = False, error: Optional[str] = None):
        self.frame = frame if frame is not None else make_frame()
        self.denied = denied
        self.error = error
        self.running = False
        self.captures = 0
        self.stops = 0

    @property
    def is_running(self) -> bool:
        return self.running

    async def start_session(self) -> None:
        if self.denied:
            raise PermissionDenied(kind="camera", status="denied")
        self.running = True

    async def capture(self) -> CapturedFrame:
        self.captures += 1
        if self.error:
            raise CaptureFailed(self.error)
        return self.frame

    def toggle_torch(self) -> bool:
        return False

    def stop_session(self) -> None:
        self.stops += 1
        self.running = False


class FlakyMealStore(InMemoryMealStore):
    """Fails the first `failures` writes."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def put_meal(self, entry):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreWriteError()
        return super().put_meal(entry)


class FailingImageStore(InMemoryImageStore):
    def upload(self, user_id, date_string, meal_id, data):
        raise ConnectionError("storage unreachable")


@pytest.fixture
def banana():
    return FoodPrediction(label="Banana", confidence=0.92, nutrition=BANANA_NUTRITION)


@pytest.fixture
def catalog() -> NutritionCatalog:
    return get_default_catalog()


@pytest.fixture
def meal_store():
    return InMemoryMealStore()


@pytest.fixture
def image_store():
    return InMemoryImageStore()


@pytest.fixture
def persister(meal_store, image_store):
    return MealPersister(meal_store, image_store)
