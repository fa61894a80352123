import abc
import asyncio
import json
import logging
import os
import time
from typing import Dict, Optional

import numpy as np  # type: ignore

from meal_scan.config import (
    CLASSIFIER_BACKEND,
    CLASSIFIER_INPUT_SIZE,
    CLASSIFIER_LABELS_PATH,
    CLASSIFIER_MIN_CONFIDENCE,
    CLASSIFIER_MODEL_PATH,
)
from meal_scan.errors import InvalidImage, LowConfidence, ModelNotLoaded, NoResults, PredictionFailed
from meal_scan.models import ClassificationRequest, FoodPrediction
from meal_scan.utils import clean_food_identifier, format_food_label
from .nutrition import NutritionCatalog, get_default_catalog
from .preprocess import to_model_input

logger = logging.getLogger(__name__)


class FoodClassifier(abc.ABC):
    """
    Image -> FoodPrediction contract.

    classify() raises one of the ClassificationError subclasses on failure.
    Implementations hold no per-call state, but callers must not run two
    classifications at once on the same instance.
    """

    @abc.abstractmethod
    def classify(self, request: ClassificationRequest) -> FoodPrediction:
        raise NotImplementedError

    async def classify_async(self, request: ClassificationRequest) -> FoodPrediction:
        return await asyncio.to_thread(self.classify, request)


def _validate_image(request: ClassificationRequest) -> np.ndarray:
    image = request.image
    if image is None or not isinstance(image, np.ndarray) or image.size == 0:
        raise InvalidImage()
    if image.ndim != 3 or image.shape[2] != 3:
        raise InvalidImage()
    return image


class OnnxFoodClassifier(FoodClassifier):
    """
    Local food classifier exported to ONNX (see export_classifier_to_onnx.py).

    - model and labels are loaded once, on construction
    - input is aspect-fit into the model's square input
    - softmax over logits, top-1 class
    - nutrition estimate taken from the bundled catalog
    """

    def __init__(
        self,
        model_path: str = CLASSIFIER_MODEL_PATH,
        labels_path: str = CLASSIFIER_LABELS_PATH,
        catalog: Optional[NutritionCatalog] = None,
        min_confidence: float = CLASSIFIER_MIN_CONFIDENCE,
    ):
        self.model_path = model_path
        self.labels_path = labels_path
        self.catalog = catalog or get_default_catalog()
        self.min_confidence = min_confidence

        self.session = None
        self.input_name: Optional[str] = None
        self.output_name: Optional[str] = None
        self.input_h = CLASSIFIER_INPUT_SIZE
        self.input_w = CLASSIFIER_INPUT_SIZE
        self.labels: Dict[int, str] = {}

        self._load()

    def _load(self) -> None:
        if not os.path.exists(self.model_path):
            logger.warning(
                "[CLASSIFIER] Model not found at %s. Classification will report ModelNotLoaded.",
                self.model_path,
            )
            return

        # Import onnxruntime lazily so that a missing runtime does not break import
        try:
            import onnxruntime as ort  # type: ignore
        except ImportError as e:
            logger.error("[CLASSIFIER] Failed to import onnxruntime: %s", e)
            return

        try:
            logger.info("[CLASSIFIER] Initializing ONNX classifier from %s", self.model_path)
            session = ort.InferenceSession(self.model_path, providers=["CPUExecutionProvider"])
        except Exception as e:
            logger.error("[CLASSIFIER] Failed to initialize classifier model: %s", e)
            return

        self.session = session
        self.input_name = session.get_inputs()[0].name
        self.output_name = session.get_outputs()[0].name

        # Typical shapes: [1, 3, H, W] or [None, 3, H, W]
        in_shape = session.get_inputs()[0].shape
        if len(in_shape) == 4:
            if isinstance(in_shape[2], int):
                self.input_h = in_shape[2]
            if isinstance(in_shape[3], int):
                self.input_w = in_shape[3]

        self.labels = self._load_labels(self.labels_path)
        logger.info(
            "[CLASSIFIER] Loaded: input=%sx%s, labels=%s",
            self.input_w,
            self.input_h,
            len(self.labels),
        )

    @staticmethod
    def _load_labels(path: str) -> Dict[int, str]:
        if not os.path.exists(path):
            logger.warning("[CLASSIFIER] Labels file not found at %s, using class ids", path)
            return {}
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        # id2label is saved as {"0": "apple_pie", ...}; a plain list is accepted too
        if isinstance(raw, list):
            return {i: str(name) for i, name in enumerate(raw)}
        return {int(k): str(v) for k, v in raw.items()}

    @property
    def is_loaded(self) -> bool:
        return self.session is not None

    def _run(self, batch: np.ndarray) -> np.ndarray:
        outputs = self.session.run([self.output_name], {self.input_name: batch})[0]
        # Assume outputs shape is (1, num_classes) or (num_classes,)
        logits = outputs[0] if outputs.ndim == 2 else outputs
        return np.asarray(logits, dtype=np.float32)

    def classify(self, request: ClassificationRequest) -> FoodPrediction:
        if not self.is_loaded:
            raise ModelNotLoaded()

        image = _validate_image(request)

        t0 = time.perf_counter()
        try:
            batch = to_model_input(image, (self.input_w, self.input_h))
            logits = self._run(batch)
        except Exception as e:
            logger.error("[CLASSIFIER] Inference failed: %s", e)
            raise PredictionFailed(str(e)) from e

        if logits.size == 0:
            raise NoResults()

        # Softmax to probabilities
        e_x = np.exp(logits - np.max(logits))
        probs = e_x / e_x.sum()

        cls_idx = int(np.argmax(probs))
        conf = float(probs[cls_idx])
        identifier = self.labels.get(cls_idx, f"class_{cls_idx}")

        logger.info(
            '[CLASSIFIER] Model prediction: class="%s", conf=%.3f in %.1fms',
            identifier,
            conf,
            (time.perf_counter() - t0) * 1000,
        )

        if conf < self.min_confidence:
            logger.warning("[CLASSIFIER] Low confidence: %.3f for %s", conf, identifier)
            raise LowConfidence()

        return self._to_prediction(identifier, conf)

    def _to_prediction(self, identifier: str, confidence: float) -> FoodPrediction:
        clean = clean_food_identifier(identifier)
        if not clean:
            raise NoResults()

        entry = self.catalog.estimate_for_label(clean)
        return FoodPrediction(
            label=format_food_label(clean),
            confidence=min(1.0, max(0.0, confidence)),
            nutrition=entry.to_nutrition(),
        )


def build_classifier(backend: str = CLASSIFIER_BACKEND) -> FoodClassifier:
    """Instantiate the configured classifier backend once per process."""
    backend = (backend or "onnx").lower()
    logger.info("[CLASSIFIER] Using backend=%s", backend)
    if backend == "openai":
        from .gpt_classifier import OpenAIVisionClassifier

        return OpenAIVisionClassifier()
    return OnnxFoodClassifier()
