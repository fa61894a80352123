import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Tuple

import cv2

from meal_scan.config import CAMERA_DEVICE_INDEX, SCAN_FRAME_SIDE_PT, SCREEN_HEIGHT_PT, SCREEN_WIDTH_PT
from meal_scan.errors import CaptureFailed, PermissionDenied
from meal_scan.image_io import bgr_to_rgb
from meal_scan.models import CapturedFrame

logger = logging.getLogger(__name__)


class PermissionStatus(str, Enum):
    not_determined = "not_determined"
    authorized = "authorized"
    denied = "denied"
    restricted = "restricted"


class CameraPermissions:
    """
    Authorization state for a media device.

    Platforms without a permission system start authorized. request() is only
    meaningful in not_determined; it settles to authorized or denied.
    """

    def __init__(
        self,
        status: PermissionStatus = PermissionStatus.authorized,
        grant_on_request: bool = True,
    ):
        self._status = status
        self.grant_on_request = grant_on_request

    def status(self) -> PermissionStatus:
        return self._status

    async def request(self) -> PermissionStatus:
        if self._status == PermissionStatus.not_determined:
            self._status = (
                PermissionStatus.authorized if self.grant_on_request else PermissionStatus.denied
            )
        return self._status


async def ensure_authorized(permissions: CameraPermissions, kind: str) -> None:
    """Raise PermissionDenied unless permissions end up authorized."""
    status = permissions.status()
    if status == PermissionStatus.not_determined:
        status = await permissions.request()
    if status != PermissionStatus.authorized:
        logger.warning("[CAPTURE] %s access not granted (status=%s)", kind, status.value)
        raise PermissionDenied(kind=kind, status=status.value)


class OpenCVCaptureSource:
    """
    Camera capture source on top of cv2.VideoCapture.

    One session at a time; one still capture in flight at a time.
    Blocking OpenCV calls run in a worker thread.
    """

    def __init__(
        self,
        device_index: int = CAMERA_DEVICE_INDEX,
        permissions: Optional[CameraPermissions] = None,
        screen_size: Tuple[float, float] = (SCREEN_WIDTH_PT, SCREEN_HEIGHT_PT),
        frame_side: float = SCAN_FRAME_SIDE_PT,
        video_capture_factory: Callable = cv2.VideoCapture,
    ):
        self.device_index = device_index
        self.permissions = permissions or CameraPermissions()
        self.screen_size = screen_size
        self.frame_side = frame_side
        self._factory = video_capture_factory
        self._cap = None
        self._capturing = False
        self.torch_on = False

    @property
    def is_running(self) -> bool:
        return self._cap is not None

    async def request_access(self) -> None:
        await ensure_authorized(self.permissions, "camera")

    async def start_session(self) -> None:
        if self._cap is not None:
            return

        await self.request_access()

        logger.info("[CAPTURE] Opening camera device %s", self.device_index)
        cap = await asyncio.to_thread(self._factory, self.device_index)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            raise CaptureFailed("Unable to access camera device")

        # a concurrent start may have won while the device was opening
        if self._cap is not None:
            cap.release()
            return
        self._cap = cap

    async def capture(self) -> CapturedFrame:
        if self._capturing:
            raise CaptureFailed("capture already in progress")
        cap = self._cap
        if cap is None:
            raise CaptureFailed("no active camera session")

        self._capturing = True
        try:
            try:
                ok, frame = await asyncio.to_thread(cap.read)
            except cv2.error as e:
                raise CaptureFailed(str(e)) from e
            if not ok or frame is None:
                raise CaptureFailed("camera returned no frame")
        finally:
            self._capturing = False

        h, w = frame.shape[:2]
        logger.info("[CAPTURE] Captured still %sx%s", w, h)
        return CapturedFrame(
            image=bgr_to_rgb(frame),
            screen_size=self.screen_size,
            frame_side=self.frame_side,
            source="camera",
        )

    def toggle_torch(self) -> bool:
        """OpenCV exposes no torch control; this is a no-op returning the torch state."""
        logger.debug("[CAPTURE] Torch not available on device %s", self.device_index)
        return self.torch_on

    def stop_session(self) -> None:
        cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.info("[CAPTURE] Camera device %s released", self.device_index)
        self.torch_on = False
