"""Main FastAPI application."""

import asyncio
import logging
import sys
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from meal_scan.capture.gallery import GalleryPicker
from meal_scan.config import (
    ALLOW_ALL_ORIGINS,
    CLASSIFIER_BACKEND,
    CONFIDENCE_THRESHOLD,
    CORS_ORIGINS,
    MAX_SCAN_SESSIONS,
    SCAN_FRAME_SIDE_PT,
)
from meal_scan.errors import StoreWriteError
from meal_scan.models import MealEntry, MealType
from meal_scan.scan_pipeline.classifier import FoodClassifier, build_classifier
from meal_scan.scan_pipeline.nutrition import FoodItem, NutritionCatalog, get_default_catalog
from meal_scan.scan_pipeline.persister import MealPersister, build_manual_entry
from meal_scan.scan_pipeline.session import ScanSession, ScanSnapshot, ScanState
from meal_scan.scan_pipeline.storage import FileImageStore, FileMealStore, check_path_segment

logging.basicConfig(
    level=logging.INFO,
    stream=sys.stdout,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class AppServices:
    """
    Process-wide collaborators, created on first use.

    The classifier is built once per process and shared by all sessions.
    Tests replace app.state.services with an instance holding fakes.
    """

    def __init__(
        self,
        classifier: Optional[FoodClassifier] = None,
        persister: Optional[MealPersister] = None,
        catalog: Optional[NutritionCatalog] = None,
        picker: Optional[GalleryPicker] = None,
        threshold: float = CONFIDENCE_THRESHOLD,
        max_sessions: int = MAX_SCAN_SESSIONS,
    ):
        self._classifier = classifier
        self._persister = persister
        self._catalog = catalog
        self.picker = picker or GalleryPicker()
        self.threshold = threshold
        self.max_sessions = max(1, max_sessions)
        self.sessions: "OrderedDict[str, ScanSession]" = OrderedDict()

    @property
    def classifier(self) -> FoodClassifier:
        if self._classifier is None:
            self._classifier = build_classifier(CLASSIFIER_BACKEND)
        return self._classifier

    @property
    def persister(self) -> MealPersister:
        if self._persister is None:
            self._persister = MealPersister(FileMealStore(), FileImageStore())
        return self._persister

    @property
    def catalog(self) -> NutritionCatalog:
        if self._catalog is None:
            self._catalog = get_default_catalog()
        return self._catalog

    def add_session(self, session: ScanSession) -> None:
        self.sessions[session.session_id] = session
        while len(self.sessions) > self.max_sessions:
            _, oldest = self.sessions.popitem(last=False)
            logger.info("[SCAN] Evicting idle session %s", oldest.session_id)
            oldest.dismiss()

    def get_session(self, scan_id: str) -> Optional[ScanSession]:
        session = self.sessions.get(scan_id)
        if session is not None:
            self.sessions.move_to_end(scan_id)
        return session

    def drop_session(self, scan_id: str) -> Optional[ScanSession]:
        session = self.sessions.pop(scan_id, None)
        if session is not None:
            session.dismiss()
        return session


# -----------------------------------
# App init
# -----------------------------------

app = FastAPI(title="Meal Scan")
app.state.services = AppServices()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if ALLOW_ALL_ORIGINS else CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _services() -> AppServices:
    return app.state.services


# -----------------------------------
# Request / response shapes
# -----------------------------------


class MealTypeRequest(BaseModel):
    meal_type: MealType


class SaveRequest(BaseModel):
    meal_type: Optional[MealType] = None


class ManualMealRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    label: str = Field(..., min_length=1)
    portion_index: Optional[int] = None
    meal_type: MealType = MealType.snack

    @field_validator("user_id")
    @classmethod
    def user_id_is_path_segment(cls, v: str) -> str:
        return check_path_segment(v, "user_id")


def render(snapshot: ScanSnapshot) -> Dict[str, Any]:
    """What the scan screen shows, derived from the snapshot only."""
    view = snapshot.model_dump(mode="json")
    view.update(
        {
            "busy": snapshot.busy,
            "analyzing": snapshot.analyzing,
            "can_capture": snapshot.can_capture,
            "can_save": snapshot.can_save,
            "low_confidence": snapshot.low_confidence,
            "can_reclassify": snapshot.can_reclassify,
        }
    )
    return view


def _food_view(item: FoodItem) -> Dict[str, Any]:
    return {
        "label": item.label,
        "display_name": item.display_name,
        "default_portion_index": item.default_portion_index,
        "portions": [
            {"index": i, "weight": p.weight, **p.to_nutrition().model_dump()}
            for i, p in enumerate(item.portions)
        ],
    }


def _get_session(scan_id: str) -> ScanSession:
    session = _services().get_session(scan_id)
    if session is None:
        raise HTTPException(404, f"Unknown scan session: {scan_id}")
    return session


def _check_user_id(user_id: str) -> None:
    # user ids name storage folders, so a bad one would fail every save
    if not user_id.strip():
        raise HTTPException(422, "user_id is required")
    try:
        check_path_segment(user_id, "user_id")
    except ValueError as e:
        raise HTTPException(422, str(e))


async def _read_upload(image: Optional[UploadFile]) -> bytes:
    if not image:
        raise HTTPException(422, "Image field is required")
    if image.content_type not in ["image/jpeg", "image/png"]:
        raise HTTPException(422, "Unsupported format (use jpeg/png)")
    return await image.read()


def _geometry(
    screen_width: Optional[float],
    screen_height: Optional[float],
    frame_side: Optional[float],
) -> Dict[str, Any]:
    # without a screen size the photo did not come from a scan frame
    if screen_width is None or screen_height is None:
        return {}
    if screen_width <= 0 or screen_height <= 0:
        raise HTTPException(422, "screen_width and screen_height must be positive")
    return {
        "screen_size": (screen_width, screen_height),
        "frame_side": frame_side or SCAN_FRAME_SIDE_PT,
    }


# -----------------------------------
# Health
# -----------------------------------


@app.get("/health")
def health():
    return {"status": "ok"}


# -----------------------------------
# Scan sessions
# -----------------------------------


@app.post("/scan")
async def start_scan(
    user_id: str = Form(...),
    image: UploadFile = File(None),
    screen_width: Optional[float] = Form(None),
    screen_height: Optional[float] = Form(None),
    frame_side: Optional[float] = Form(None),
):
    """Open a scan session and classify the uploaded still."""
    _check_user_id(user_id)
    data = await _read_upload(image)
    geometry = _geometry(screen_width, screen_height, frame_side)

    services = _services()
    session = ScanSession(
        classifier=services.classifier,
        persister=services.persister,
        user_id=user_id,
        threshold=services.threshold,
    )
    services.add_session(session)

    t0 = time.time()
    logger.info("[SCAN] Starting /scan %s for file: %s", session.session_id, image.filename)
    snapshot = await session.pick_from_gallery(services.picker, data, **geometry)
    logger.info(
        "[SCAN] /scan %s -> %s in %sms",
        session.session_id,
        snapshot.state.value,
        round((time.time() - t0) * 1000, 2),
    )
    return render(snapshot)


@app.get("/scan/{scan_id}")
def get_scan(scan_id: str):
    return render(_get_session(scan_id).snapshot())


@app.post("/scan/{scan_id}/meal-type")
def select_meal_type(scan_id: str, payload: MealTypeRequest):
    return render(_get_session(scan_id).select_meal_type(payload.meal_type))


@app.post("/scan/{scan_id}/save")
async def save_scan(scan_id: str, payload: Optional[SaveRequest] = None):
    session = _get_session(scan_id)
    meal_type = payload.meal_type if payload else None
    snapshot = await session.save(meal_type)
    if snapshot.state == ScanState.saved:
        _services().drop_session(scan_id)
        logger.info("[SCAN] %s saved, session closed", scan_id)
    return render(snapshot)


@app.post("/scan/{scan_id}/retry")
def retry_scan(scan_id: str):
    return render(_get_session(scan_id).retry())


@app.post("/scan/{scan_id}/reclassify")
async def reclassify_scan(scan_id: str):
    """Run the held frame again after a retryable classification error."""
    return render(await _get_session(scan_id).reclassify())


@app.post("/scan/{scan_id}/image")
async def resubmit_image(
    scan_id: str,
    image: UploadFile = File(None),
    screen_width: Optional[float] = Form(None),
    screen_height: Optional[float] = Form(None),
    frame_side: Optional[float] = Form(None),
):
    """New still for a session that is idle or retrying; ignored otherwise."""
    session = _get_session(scan_id)
    data = await _read_upload(image)
    geometry = _geometry(screen_width, screen_height, frame_side)
    return render(await session.pick_from_gallery(_services().picker, data, **geometry))


@app.delete("/scan/{scan_id}")
def dismiss_scan(scan_id: str):
    session = _get_session(scan_id)
    snapshot = session.dismiss()
    _services().drop_session(scan_id)
    return render(snapshot)


# -----------------------------------
# Meals
# -----------------------------------


@app.post("/meals/manual")
async def log_manual_meal(payload: ManualMealRequest):
    """Log a catalog food without scanning; nutrition comes from the chosen portion."""
    services = _services()
    catalog = services.catalog

    item = catalog.get(payload.label)
    if item is None:
        raise HTTPException(404, f"Unknown food: {payload.label}")
    portion_index = (
        payload.portion_index if payload.portion_index is not None else item.default_portion_index
    )

    try:
        entry = build_manual_entry(
            catalog, payload.label, portion_index, payload.meal_type, payload.user_id
        )
    except IndexError as e:
        raise HTTPException(422, str(e))

    try:
        saved = await services.persister.write(entry)
    except StoreWriteError as e:
        raise HTTPException(500, e.message)
    return saved.model_dump(mode="json")


def _daily_totals(meals: List[MealEntry]) -> Dict[str, float]:
    totals: Dict[str, float] = {
        "calories": 0,
        "protein": 0.0,
        "fat": 0.0,
        "carbs": 0.0,
        "fiber": 0.0,
        "sugars": 0.0,
        "sodium": 0.0,
    }
    for meal in meals:
        for key, value in meal.nutrition.model_dump().items():
            totals[key] += value
    return {k: round(v, 1) for k, v in totals.items()}


@app.get("/meals/{user_id}/{date}")
async def list_meals(user_id: str, date: str):
    try:
        datetime.strptime(date, "%Y-%m-%d")
    except ValueError:
        raise HTTPException(422, "date must be YYYY-MM-DD")

    store = _services().persister.meal_store
    try:
        meals = await asyncio.to_thread(store.list_meals, user_id, date)
    except ValueError as e:
        raise HTTPException(422, str(e))

    return {
        "user_id": user_id,
        "date": date,
        "meals": [m.model_dump(mode="json") for m in meals],
        "totals": _daily_totals(meals),
    }


# -----------------------------------
# Catalog
# -----------------------------------


@app.get("/foods")
def search_foods(q: str = Query("")):
    return [_food_view(item) for item in _services().catalog.search(q)]
