"""Single-call GPT vision classifier backend."""

import base64
import logging
import time
from typing import Any, Dict

from meal_scan.config import CLASSIFIER_MIN_CONFIDENCE, GPT_MODEL
from meal_scan.errors import LowConfidence, ModelNotLoaded, NoResults, PredictionFailed
from meal_scan.image_io import encode_jpeg
from meal_scan.models import ClassificationRequest, FoodPrediction, NutritionData
from meal_scan.openai_client import get_openai_client
from meal_scan.prompts import CLASSIFY_PROMPT, SYSTEM_PROMPT
from meal_scan.utils import clean_food_identifier, extract_json, format_food_label
from .classifier import FoodClassifier, _validate_image

logger = logging.getLogger(__name__)


def _number(value: Any, default: float = 0.0) -> float:
    """Models return numbers as 12, "12", "12g" or null."""
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    digits = "".join(ch for ch in str(value) if ch.isdigit() or ch in ".-")
    try:
        return float(digits)
    except ValueError:
        return default


def parse_classification(parsed: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize model JSON into label / confidence / nutrition fields."""
    label = str(parsed.get("label") or parsed.get("food") or parsed.get("name") or "").strip()

    confidence = _number(parsed.get("confidence"), 0.0)
    if confidence > 1.0:
        # percent
        confidence = confidence / 100.0
    confidence = min(1.0, max(0.0, confidence))

    nutrition = NutritionData(
        calories=int(round(max(0.0, _number(parsed.get("calories") or parsed.get("kcal"))))),
        protein=max(0.0, _number(parsed.get("protein"))),
        fat=max(0.0, _number(parsed.get("fat"))),
        carbs=max(0.0, _number(parsed.get("carbs") or parsed.get("carbohydrates"))),
        fiber=max(0.0, _number(parsed.get("fiber"))),
        sugars=max(0.0, _number(parsed.get("sugars") or parsed.get("sugar"))),
        sodium=max(0.0, _number(parsed.get("sodium"))),
    )
    return {"label": label, "confidence": confidence, "nutrition": nutrition}


class OpenAIVisionClassifier(FoodClassifier):
    """
    Classifier backed by one GPT vision call.

    The model returns label, confidence and a nutrition estimate in a single
    JSON object; nothing is looked up locally.
    """

    def __init__(
        self,
        client=None,
        model: str = GPT_MODEL,
        min_confidence: float = CLASSIFIER_MIN_CONFIDENCE,
    ):
        self._client = client
        self.model = (model or "gpt-4o-mini").strip() or "gpt-4o-mini"
        self.min_confidence = min_confidence

    def _get_client(self):
        if self._client is None:
            try:
                self._client = get_openai_client()
            except RuntimeError as e:
                logger.error("[CLASSIFIER] OpenAI client unavailable: %s", e)
                raise ModelNotLoaded() from e
        return self._client

    def classify(self, request: ClassificationRequest) -> FoodPrediction:
        image = _validate_image(request)
        client = self._get_client()

        b64_img = base64.b64encode(encode_jpeg(image)).decode("utf-8")
        logger.info(
            "[CLASSIFIER] Sending %.1fkb image to model=%s",
            len(b64_img) / 1024,
            self.model,
        )

        t0 = time.perf_counter()
        try:
            response = client.chat.completions.create(
                model=self.model,
                temperature=0,
                max_tokens=300,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": CLASSIFY_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:image/jpeg;base64,{b64_img}"},
                            },
                        ],
                    },
                ],
            )
            result_text = response.choices[0].message.content or ""
        except Exception as e:
            logger.error("[CLASSIFIER] Food classification via OpenAI failed: %s", e)
            raise PredictionFailed(str(e)) from e

        logger.info(
            "[CLASSIFIER] GPT response received in %.1fms, length: %s",
            (time.perf_counter() - t0) * 1000,
            len(result_text),
        )

        try:
            parsed = parse_classification(extract_json(result_text))
        except ValueError as e:
            logger.error("[CLASSIFIER] Cannot parse GPT response: %s", e)
            raise PredictionFailed(f"unreadable model response ({e})") from e

        clean = clean_food_identifier(parsed["label"])
        if not clean:
            raise NoResults()
        if parsed["confidence"] < self.min_confidence:
            logger.warning("[CLASSIFIER] Low confidence: %.3f for %s", parsed["confidence"], clean)
            raise LowConfidence()

        return FoodPrediction(
            label=format_food_label(clean),
            confidence=parsed["confidence"],
            nutrition=parsed["nutrition"],
        )
