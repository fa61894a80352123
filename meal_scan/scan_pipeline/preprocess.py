import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from meal_scan.models import CapturedFrame, ClassificationRequest

logger = logging.getLogger(__name__)


def scan_crop_box(
    image_size: Tuple[int, int],
    screen_size: Tuple[float, float],
    frame_side: float,
) -> Optional[Tuple[int, int, int]]:
    """
    Map the on-screen scan frame onto image pixels.

    image_size is (width, height) in pixels, screen_size is (width, height) in
    points. The larger of the two axis scales (pixels per point) is applied to
    frame_side, giving a square centered on the image.

    Returns (x, y, side) or None when the square does not fit inside the image.
    """
    w, h = image_size
    screen_w, screen_h = screen_size
    if w <= 0 or h <= 0 or screen_w <= 0 or screen_h <= 0 or frame_side <= 0:
        return None

    scale = max(w / screen_w, h / screen_h)
    side = int(round(frame_side * scale))

    if side <= 0 or side > w or side > h:
        return None

    x = (w - side) // 2
    y = (h - side) // 2
    return x, y, side


def crop_to_scan_frame(
    image: np.ndarray,
    screen_size: Tuple[float, float],
    frame_side: float,
) -> ClassificationRequest:
    """
    Crop a captured image to the region the user aligned inside the scan frame.

    Never fails: if the region falls outside the image the original image is
    returned unchanged (cropped=False).
    """
    if image is None or image.size == 0:
        raise ValueError("Empty image passed to crop_to_scan_frame")

    h, w = image.shape[:2]
    box = scan_crop_box((w, h), screen_size, frame_side)
    if box is None:
        logger.warning(
            "[PREPROCESS] Scan frame %.0fpt on screen %sx%s does not fit image %sx%s, using full image",
            frame_side,
            screen_size[0],
            screen_size[1],
            w,
            h,
        )
        return ClassificationRequest(image=image, cropped=False)

    x, y, side = box
    crop = image[y : y + side, x : x + side]
    logger.debug("[PREPROCESS] Cropped %sx%s -> %sx%s at (%s, %s)", w, h, side, side, x, y)
    return ClassificationRequest(image=crop, cropped=True, crop_box=(x, y, side, side))


def preprocess_frame(frame: CapturedFrame) -> ClassificationRequest:
    """CapturedFrame -> ClassificationRequest using the frame geometry recorded at capture."""
    if frame.image is None or frame.image.size == 0:
        raise ValueError("Empty captured frame")
    if frame.screen_size is None or frame.frame_side is None:
        return ClassificationRequest(image=frame.image, cropped=False)
    return crop_to_scan_frame(frame.image, frame.screen_size, frame.frame_side)


def to_model_input(image: np.ndarray, size: Tuple[int, int] = (224, 224)) -> np.ndarray:
    """
    Aspect-fit an RGB image into the classifier input and normalize.

    The image is scaled to fit inside (width, height), drawn centered on a black
    canvas and returned as float32 (1, 3, H, W) in [0, 1].
    """
    if image is None or image.size == 0:
        raise ValueError("Empty image passed to to_model_input")

    target_w, target_h = size
    h, w = image.shape[:2]
    scale = min(target_w / w, target_h / h)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))

    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_AREA)

    canvas = np.zeros((target_h, target_w, 3), dtype=np.uint8)
    x0 = (target_w - new_w) // 2
    y0 = (target_h - new_h) // 2
    canvas[y0 : y0 + new_h, x0 : x0 + new_w] = resized

    arr = canvas.astype(np.float32) / 255.0
    return arr.transpose(2, 0, 1)[None]  # (1, 3, H, W)
