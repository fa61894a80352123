"""Pipeline error taxonomy and user-facing messages."""

from typing import Optional

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class ScanError(Exception):
    """Base class for every error the scan pipeline translates into UI state."""

    retryable: bool = True
    # action the view offers besides dismissing:
    # "retry" (repeat the failed step), "recapture", "open_settings", "select_meal_type"
    action: str = "retry"
    message: str = GENERIC_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


# -----------------------------------
# Capture errors
# -----------------------------------


class PermissionDenied(ScanError):
    action = "open_settings"

    def __init__(self, kind: str = "camera", status: Optional[str] = None):
        self.kind = kind
        self.status = status
        what = "Camera" if kind == "camera" else "Photo library"
        super().__init__(
            f"{what} access is required to scan meals. "
            "Please enable it in Settings."
        )


class CaptureFailed(ScanError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to capture photo: {reason}")


# -----------------------------------
# Classification errors
# -----------------------------------


class ClassificationError(ScanError):
    # soft failures are a normal low-confidence branch, not an error state
    soft: bool = False


class InvalidImage(ClassificationError):
    # the same frame would fail again; only a new photo helps
    retryable = False
    action = "recapture"
    message = "Invalid image. Please try taking another photo."


class ModelNotLoaded(ClassificationError):
    message = "Food recognition is temporarily unavailable. Please try again in a moment."


class NoResults(ClassificationError):
    soft = True
    message = "No food detected in image. Please ensure food is clearly visible and well-lit."


class LowConfidence(ClassificationError):
    soft = True
    message = (
        "Unable to identify food with confidence. Please try again with better "
        "lighting or position the food more clearly in the frame."
    )


class PredictionFailed(ClassificationError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Analysis failed: {detail}")


# -----------------------------------
# Confirmation errors
# -----------------------------------


class InvalidMealType(ScanError):
    action = "select_meal_type"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown meal type: {value}")


# -----------------------------------
# Persistence errors
# -----------------------------------


class ImageUploadError(ScanError):
    message = "Image upload failed"


class StoreWriteError(ScanError):
    message = "Failed to save meal. Please try again."


def user_message(exc: BaseException) -> str:
    """Format any error for display; unknown errors become an opaque message."""
    if isinstance(exc, ScanError):
        return exc.message
    return GENERIC_ERROR_MESSAGE
