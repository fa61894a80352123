"""Image decoding / encoding helpers shared by capture, classifier and upload."""

from io import BytesIO

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from meal_scan.config import IMAGE_JPEG_QUALITY


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode JPEG/PNG/... bytes into an upright RGB array.

    EXIF orientation is applied so the pixels match what the user saw.
    Raises ValueError for empty or undecodable data.
    """
    if not data:
        raise ValueError("Empty image data")

    try:
        with Image.open(BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGB")
            return np.asarray(img).copy()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Cannot decode image: {e}") from e


def bgr_to_rgb(frame: np.ndarray) -> np.ndarray:
    """Convert an OpenCV BGR frame to RGB."""
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


def encode_jpeg(image: np.ndarray, quality: int = IMAGE_JPEG_QUALITY) -> bytes:
    """Encode an RGB array as JPEG bytes (always JPEG)."""
    if image is None or image.size == 0:
        raise ValueError("Empty image passed to encode_jpeg")

    ok, buf = cv2.imencode(
        ".jpg",
        cv2.cvtColor(image, cv2.COLOR_RGB2BGR),
        [cv2.IMWRITE_JPEG_QUALITY, int(quality)],
    )
    if not ok:
        raise ValueError("cv2.imencode() failed to encode JPEG")
    return buf.tobytes()
