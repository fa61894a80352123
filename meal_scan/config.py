import os


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]


PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
CORS_ORIGINS = _parse_cors_origins(os.getenv("CORS_ORIGINS", "*"))
ALLOW_ALL_ORIGINS = CORS_ORIGINS == ["*"]

# -----------------------------------
# Result gate
# -----------------------------------

# CONFIDENCE_THRESHOLD: single accept threshold for a scan result.
# prediction.confidence >= threshold -> high-confidence result (Save offered),
# otherwise low-confidence result (Rescan only).
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.8"))

# CLASSIFIER_MIN_CONFIDENCE: below this the classifier reports "no usable label"
# (LowConfidence soft failure) instead of a prediction.
CLASSIFIER_MIN_CONFIDENCE = float(os.getenv("CLASSIFIER_MIN_CONFIDENCE", "0.3"))

# -----------------------------------
# Scan frame / crop configuration
# -----------------------------------

# SCAN_FRAME_SIDE_PT: side of the square guide overlay, in screen points
SCAN_FRAME_SIDE_PT = float(os.getenv("SCAN_FRAME_SIDE_PT", "280"))

# Default screen size (points) used when the client does not send one
SCREEN_WIDTH_PT = float(os.getenv("SCREEN_WIDTH_PT", "390"))
SCREEN_HEIGHT_PT = float(os.getenv("SCREEN_HEIGHT_PT", "844"))

# -----------------------------------
# Classifier configuration
# -----------------------------------

# CLASSIFIER_BACKEND:
# - "onnx":   local ONNX Runtime food classifier (default)
# - "openai": single GPT vision call returning label + nutrition
CLASSIFIER_BACKEND = os.getenv("CLASSIFIER_BACKEND", "onnx").lower()

MODEL_DIR = os.getenv("MODEL_DIR", os.path.join(os.getcwd(), "models", "food_classifier"))
CLASSIFIER_MODEL_PATH = os.getenv("CLASSIFIER_MODEL_PATH", os.path.join(MODEL_DIR, "classifier.onnx"))
CLASSIFIER_LABELS_PATH = os.getenv(
    "CLASSIFIER_LABELS_PATH", os.path.join(MODEL_DIR, "classifier_labels.json")
)

# CLASSIFIER_INPUT_SIZE: fallback square input side when the model shape is dynamic
CLASSIFIER_INPUT_SIZE = int(os.getenv("CLASSIFIER_INPUT_SIZE", "224"))

# GPT_MODEL: vision model used by the "openai" classifier backend
GPT_MODEL = os.getenv("GPT_MODEL", "gpt-4o-mini")

# -----------------------------------
# Nutrition catalog / storage
# -----------------------------------

NUTRITION_CSV_PATH = os.getenv(
    "NUTRITION_CSV_PATH", os.path.join(PACKAGE_DIR, "scan_pipeline", "data", "nutrition.csv")
)

# DATA_ROOT: root of the local document store and image blobs
DATA_ROOT = os.getenv("DATA_ROOT", os.path.join(os.getcwd(), "data"))

# IMAGE_JPEG_QUALITY: JPEG quality for uploaded meal photos
IMAGE_JPEG_QUALITY = int(os.getenv("IMAGE_JPEG_QUALITY", "80"))

# -----------------------------------
# Camera
# -----------------------------------

CAMERA_DEVICE_INDEX = int(os.getenv("CAMERA_DEVICE_INDEX", "0"))

# -----------------------------------
# HTTP host
# -----------------------------------

# MAX_SCAN_SESSIONS: open scan sessions kept in memory; the least recently used is dropped
MAX_SCAN_SESSIONS = int(os.getenv("MAX_SCAN_SESSIONS", "256"))
