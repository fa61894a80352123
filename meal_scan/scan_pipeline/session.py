import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from meal_scan.config import CONFIDENCE_THRESHOLD
from meal_scan.errors import (
    CaptureFailed,
    ClassificationError,
    InvalidImage,
    InvalidMealType,
    PredictionFailed,
    ScanError,
    StoreWriteError,
    user_message,
)
from meal_scan.models import CapturedFrame, FoodPrediction, MealEntry, MealType
from .classifier import FoodClassifier
from .persister import MealPersister, build_scan_entry, new_meal_id
from .preprocess import preprocess_frame

logger = logging.getLogger(__name__)


class ScanState(str, Enum):
    idle = "idle"
    capturing = "capturing"
    classifying = "classifying"
    high_confidence = "high_confidence"
    low_confidence = "low_confidence"
    confirming = "confirming"
    saving = "saving"
    saved = "saved"
    save_failed = "save_failed"
    retrying = "retrying"


CAN_CAPTURE = {ScanState.idle, ScanState.retrying}
CAN_SELECT_MEAL_TYPE = {ScanState.high_confidence, ScanState.confirming}
CAN_SAVE = {ScanState.high_confidence, ScanState.confirming, ScanState.save_failed}
CAN_RETRY = {
    ScanState.high_confidence,
    ScanState.low_confidence,
    ScanState.confirming,
    ScanState.save_failed,
}
BUSY = {ScanState.capturing, ScanState.classifying, ScanState.saving}


def parse_meal_type(value: Union[MealType, str]) -> MealType:
    if isinstance(value, MealType):
        return value
    try:
        return MealType(value)
    except ValueError:
        pass
    try:
        return MealType[str(value).strip().lower()]
    except KeyError:
        raise InvalidMealType(value) from None


def is_high_confidence(confidence: float, threshold: float = CONFIDENCE_THRESHOLD) -> bool:
    return confidence >= threshold


class ScanSnapshot(BaseModel):
    """Immutable view state; the view renders this and nothing else."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    state: ScanState
    threshold: float
    prediction: Optional[FoodPrediction] = None
    meal_type: Optional[MealType] = None
    error: Optional[str] = None
    # ScanError.action of the error being shown
    error_action: Optional[str] = None
    saved_entry: Optional[MealEntry] = None
    # in idle: the last frame failed with a retryable error and can be re-run
    has_frame: bool = False
    dismissed: bool = False

    @property
    def busy(self) -> bool:
        return self.state in BUSY

    @property
    def analyzing(self) -> bool:
        return self.state == ScanState.classifying

    @property
    def can_capture(self) -> bool:
        return not self.dismissed and self.state in CAN_CAPTURE

    @property
    def can_reclassify(self) -> bool:
        return not self.dismissed and self.state == ScanState.idle and self.has_frame

    @property
    def can_save(self) -> bool:
        return not self.dismissed and self.state in CAN_SAVE

    @property
    def low_confidence(self) -> bool:
        return self.state == ScanState.low_confidence


class ScanSession:
    """
    One capture -> classify -> confirm -> save run for one user.

    States:
        idle -> capturing -> classifying -> high_confidence | low_confidence
        high_confidence -> confirming -> saving -> saved | save_failed
        high_confidence | low_confidence | confirming | save_failed -> retrying -> capturing
        save_failed -> saving (save retried without recapturing)
        idle -> capturing (reclassify() of the held frame after a retryable error)

    All state changes happen on the event loop that drives the session; blocking
    work (camera reads, preprocessing, inference, upload, write) is awaited in
    worker threads and the result applied afterwards.

    Triggers that arrive while a step is in flight are ignored. Results that
    arrive after dismiss() or retry() are discarded.
    """

    def __init__(
        self,
        classifier: FoodClassifier,
        persister: MealPersister,
        user_id: str,
        capture_source=None,
        threshold: float = CONFIDENCE_THRESHOLD,
        session_id: Optional[str] = None,
    ):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be in [0, 1], got {threshold}")

        self.session_id = session_id or uuid4().hex
        self.classifier = classifier
        self.persister = persister
        self.user_id = user_id
        self.capture_source = capture_source
        self.threshold = threshold

        self.state = ScanState.idle
        self.dismissed = False

        self._frame: Optional[CapturedFrame] = None
        self._prediction: Optional[FoodPrediction] = None
        self._meal_type: Optional[MealType] = None
        self._meal_id: Optional[str] = None
        self._meal_timestamp: Optional[datetime] = None
        self._image_url: Optional[str] = None
        self._saved_entry: Optional[MealEntry] = None
        self._error: Optional[str] = None
        self._error_action: Optional[str] = None

        self._generation = 0
        self._listeners: List[Callable[[ScanSnapshot], None]] = []

    # -------------------------------------------------------------------------
    # View state
    # -------------------------------------------------------------------------

    def snapshot(self) -> ScanSnapshot:
        return ScanSnapshot(
            session_id=self.session_id,
            state=self.state,
            threshold=self.threshold,
            prediction=self._prediction,
            meal_type=self._meal_type,
            error=self._error,
            error_action=self._error_action,
            saved_entry=self._saved_entry,
            has_frame=self._frame is not None,
            dismissed=self.dismissed,
        )

    def subscribe(self, callback: Callable[[ScanSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _set_state(self, state: ScanState) -> None:
        logger.info("[SCAN] %s: %s -> %s", self.session_id, self.state.value, state.value)
        self.state = state
        snap = self.snapshot()
        for callback in list(self._listeners):
            callback(snap)

    def _is_stale(self, generation: int) -> bool:
        if self.dismissed or generation != self._generation:
            logger.info("[SCAN] %s: discarding stale result", self.session_id)
            return True
        return False

    def _clear_error(self) -> None:
        self._error = None
        self._error_action = None

    def _discard_scan(self) -> None:
        self._frame = None
        self._prediction = None
        self._meal_type = None
        self._meal_id = None
        self._meal_timestamp = None
        self._image_url = None

    def _fail(self, exc: BaseException, keep_frame: bool = False) -> ScanSnapshot:
        """
        Hard failure before a result exists: back to idle with a user-facing message.

        With keep_frame the captured frame survives so reclassify() can run it again.
        """
        if isinstance(exc, ScanError):
            logger.warning("[SCAN] %s: %s", self.session_id, exc.message)
        else:
            logger.error("[SCAN] %s: unexpected error: %s", self.session_id, exc)
        frame = self._frame if keep_frame else None
        self._discard_scan()
        self._frame = frame
        self._error = user_message(exc)
        self._error_action = exc.action if isinstance(exc, ScanError) else "retry"
        self._set_state(ScanState.idle)
        return self.snapshot()

    def _report(self, exc: ScanError) -> ScanSnapshot:
        """Surface an error while keeping the current state and result."""
        logger.warning("[SCAN] %s: %s", self.session_id, exc.message)
        self._error = exc.message
        self._error_action = exc.action
        self._set_state(self.state)
        return self.snapshot()

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    async def open(self) -> ScanSnapshot:
        """Request camera access and start the preview session."""
        if self.dismissed or self.capture_source is None:
            return self.snapshot()

        generation = self._generation
        try:
            await self.capture_source.start_session()
        except ScanError as e:
            if self._is_stale(generation):
                self.capture_source.stop_session()
                return self.snapshot()
            if self.state not in CAN_CAPTURE:
                return self._report(e)
            return self._fail(e)

        if self._is_stale(generation):
            self.capture_source.stop_session()
            return self.snapshot()
        self._clear_error()
        return self.snapshot()

    async def capture(self) -> ScanSnapshot:
        """Take a still from the camera and classify it."""
        if self.dismissed or self.state not in CAN_CAPTURE:
            return self.snapshot()
        if self.capture_source is None:
            return self._fail(CaptureFailed("no camera configured"))

        generation = self._generation
        self._clear_error()
        self._set_state(ScanState.capturing)

        try:
            if not self.capture_source.is_running:
                await self.capture_source.start_session()
            frame = await self.capture_source.capture()
        except ScanError as e:
            if self._is_stale(generation):
                return self.snapshot()
            return self._fail(e)

        if self._is_stale(generation):
            return self.snapshot()
        return await self._process(frame, generation)

    async def submit(self, frame: CapturedFrame) -> ScanSnapshot:
        """Classify a frame obtained elsewhere (gallery, upload)."""
        if self.dismissed or self.state not in CAN_CAPTURE:
            return self.snapshot()

        generation = self._generation
        self._clear_error()
        self._set_state(ScanState.capturing)
        return await self._process(frame, generation)

    async def pick_from_gallery(self, picker, data: Optional[bytes], **geometry) -> ScanSnapshot:
        """Gallery alternative to capture(); a cancelled pick leaves the state as it was."""
        if self.dismissed or self.state not in CAN_CAPTURE:
            return self.snapshot()

        generation = self._generation
        previous = self.state
        self._clear_error()
        self._set_state(ScanState.capturing)

        try:
            frame = await picker.pick(data, **geometry)
        except ScanError as e:
            if self._is_stale(generation):
                return self.snapshot()
            return self._fail(e)

        if self._is_stale(generation):
            return self.snapshot()
        if frame is None:
            self._set_state(previous)
            return self.snapshot()
        return await self._process(frame, generation)

    async def reclassify(self) -> ScanSnapshot:
        """Run the held frame through classification again after a retryable error."""
        if self.dismissed or self.state != ScanState.idle or self._frame is None:
            return self.snapshot()

        generation = self._generation
        self._clear_error()
        self._set_state(ScanState.capturing)
        return await self._process(self._frame, generation)

    # -------------------------------------------------------------------------
    # Preprocess + classify + gate
    # -------------------------------------------------------------------------

    async def _process(self, frame: CapturedFrame, generation: int) -> ScanSnapshot:
        self._frame = frame

        try:
            request = await asyncio.to_thread(preprocess_frame, frame)
        except ValueError as e:
            logger.warning("[SCAN] %s: preprocessing failed: %s", self.session_id, e)
            if self._is_stale(generation):
                return self.snapshot()
            return self._fail(InvalidImage())

        if self._is_stale(generation):
            return self.snapshot()
        self._set_state(ScanState.classifying)

        t0 = time.perf_counter()
        try:
            prediction = await self.classifier.classify_async(request)
        except ClassificationError as e:
            if self._is_stale(generation):
                return self.snapshot()
            if e.soft:
                logger.info("[SCAN] %s: soft classification failure: %s", self.session_id, e.message)
                self._prediction = None
                self._error = e.message
                self._error_action = "retry"
                self._set_state(ScanState.low_confidence)
                return self.snapshot()
            return self._fail(e, keep_frame=e.retryable)
        except Exception as e:
            logger.exception("[SCAN] %s: classifier raised", self.session_id)
            if self._is_stale(generation):
                return self.snapshot()
            return self._fail(PredictionFailed(str(e)), keep_frame=True)

        if self._is_stale(generation):
            return self.snapshot()

        logger.info(
            "[SCAN] %s: classified %s (conf=%.2f, threshold=%.2f) in %.1fms",
            self.session_id,
            prediction.label,
            prediction.confidence,
            self.threshold,
            (time.perf_counter() - t0) * 1000,
        )

        self._prediction = prediction
        if is_high_confidence(prediction.confidence, self.threshold):
            self._set_state(ScanState.high_confidence)
        else:
            self._error = "Low confidence result. Rescan for a better match."
            self._error_action = "retry"
            self._set_state(ScanState.low_confidence)
        return self.snapshot()

    # -------------------------------------------------------------------------
    # Confirm + save
    # -------------------------------------------------------------------------

    def select_meal_type(self, meal_type: Union[MealType, str]) -> ScanSnapshot:
        """Accepts a MealType, its value ("Lunch") or its name ("lunch")."""
        if self.dismissed or self.state not in CAN_SELECT_MEAL_TYPE:
            return self.snapshot()
        try:
            self._meal_type = parse_meal_type(meal_type)
        except InvalidMealType as e:
            return self._report(e)
        self._clear_error()
        self._set_state(ScanState.confirming)
        return self.snapshot()

    async def save(self, meal_type: Optional[Union[MealType, str]] = None) -> ScanSnapshot:
        """
        Upload the photo (best-effort) and write the meal once.

        From save_failed this retries the write with the same meal id, so a
        failed attempt never leaves a second document behind.
        """
        if self.dismissed or self.state not in CAN_SAVE:
            return self.snapshot()

        if self.state in CAN_SELECT_MEAL_TYPE:
            try:
                chosen = parse_meal_type(meal_type or self._meal_type or MealType.snack)
            except InvalidMealType as e:
                return self._report(e)
            self.select_meal_type(chosen)

        generation = self._generation
        self._clear_error()
        self._set_state(ScanState.saving)

        if self._meal_id is None:
            self._meal_id = new_meal_id()
            self._meal_timestamp = datetime.now()

        entry = build_scan_entry(
            self._prediction,
            self._meal_type,
            self.user_id,
            meal_id=self._meal_id,
            timestamp=self._meal_timestamp,
            image_url=self._image_url,
        )

        if self._image_url is None and self._frame is not None:
            url = await self.persister.upload_image(entry, self._frame.image)
            if self._is_stale(generation):
                return self.snapshot()
            if url:
                self._image_url = url
                entry = entry.model_copy(update={"image_url": url})

        try:
            saved = await self.persister.write(entry)
        except StoreWriteError as e:
            if self._is_stale(generation):
                return self.snapshot()
            self._error = e.message
            self._error_action = "retry"
            self._set_state(ScanState.save_failed)
            return self.snapshot()

        if self._is_stale(generation):
            return self.snapshot()

        self._saved_entry = saved
        self._set_state(ScanState.saved)
        return self.snapshot()

    # -------------------------------------------------------------------------
    # Retry / teardown
    # -------------------------------------------------------------------------

    def retry(self) -> ScanSnapshot:
        """Drop the current frame and result; the next capture starts fresh."""
        if self.dismissed or self.state not in CAN_RETRY:
            return self.snapshot()
        self._generation += 1
        self._discard_scan()
        self._clear_error()
        self._set_state(ScanState.retrying)
        return self.snapshot()

    async def rescan(self) -> ScanSnapshot:
        """retry() followed by a new camera capture."""
        self.retry()
        return await self.capture()

    def toggle_torch(self) -> bool:
        if self.capture_source is None or self.dismissed:
            return False
        return self.capture_source.toggle_torch()

    def dismiss(self) -> ScanSnapshot:
        """Release the camera and ignore anything still in flight."""
        if self.dismissed:
            return self.snapshot()
        self.dismissed = True
        self._generation += 1
        if self.capture_source is not None:
            self.capture_source.stop_session()
        self._listeners.clear()
        logger.info("[SCAN] %s: dismissed in state %s", self.session_id, self.state.value)
        return self.snapshot()
