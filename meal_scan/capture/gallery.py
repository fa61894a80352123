import asyncio
import logging
from typing import Optional, Tuple

from meal_scan.errors import CaptureFailed
from meal_scan.image_io import decode_image
from meal_scan.models import CapturedFrame
from .camera import CameraPermissions, ensure_authorized

logger = logging.getLogger(__name__)


class GalleryPicker:
    """
    Turns one picked photo (encoded bytes) into a CapturedFrame.

    No bytes means the picker was cancelled. Library photos are classified
    uncropped unless the caller passes the scan frame geometry, which clients
    do when uploading a still taken from their own live scan view.
    """

    def __init__(self, permissions: Optional[CameraPermissions] = None):
        self.permissions = permissions or CameraPermissions()

    async def pick(
        self,
        data: Optional[bytes],
        screen_size: Optional[Tuple[float, float]] = None,
        frame_side: Optional[float] = None,
    ) -> Optional[CapturedFrame]:
        await ensure_authorized(self.permissions, "photos")

        if not data:
            logger.info("[CAPTURE] Gallery selection cancelled")
            return None

        try:
            image = await asyncio.to_thread(decode_image, data)
        except ValueError as e:
            raise CaptureFailed(f"unsupported or corrupted image ({e})") from e

        h, w = image.shape[:2]
        logger.info("[CAPTURE] Picked image %sx%s", w, h)
        return CapturedFrame(
            image=image,
            screen_size=screen_size,
            frame_side=frame_side if screen_size is not None else None,
            source="gallery",
        )
