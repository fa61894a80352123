"""Data model for the meal scan pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator


class MealType(str, Enum):
    breakfast = "Breakfast"
    lunch = "Lunch"
    dinner = "Dinner"
    snack = "Snack"


class NutritionData(BaseModel):
    model_config = ConfigDict(frozen=True)

    calories: int = Field(0, ge=0)
    protein: float = Field(0.0, ge=0)
    fat: float = Field(0.0, ge=0)
    carbs: float = Field(0.0, ge=0)
    fiber: float = Field(0.0, ge=0)
    sugars: float = Field(0.0, ge=0)
    sodium: float = Field(0.0, ge=0)


class FoodPrediction(BaseModel):
    """
    Result of one classification.

    Held in memory for one scan session only; the durable record is the
    MealEntry built from it.
    """

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    nutrition: NutritionData


class MealEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    meal_id: str
    meal_name: str
    food_label: Optional[str] = None
    meal_type: MealType
    portion_index: Optional[int] = None
    portion_weight: Optional[float] = None
    nutrition: NutritionData
    timestamp: datetime
    date_string: str = ""
    user_id: str
    image_url: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0, le=1)
    source: str = "scan"
    # where the nutrition values came from: "classifier" or "catalog", never both
    nutrition_source: str = "classifier"

    @model_validator(mode="before")
    @classmethod
    def _fill_date_string(cls, data):
        if isinstance(data, dict) and not data.get("date_string"):
            ts = data.get("timestamp")
            if isinstance(ts, str):
                ts = datetime.fromisoformat(ts)
            if isinstance(ts, datetime):
                data = dict(data)
                data["date_string"] = ts.strftime("%Y-%m-%d")
        return data


@dataclass(frozen=True)
class CapturedFrame:
    """
    Raw still image (RGB ndarray) plus the scan frame geometry shown when it was taken.

    screen_size is (width, height) in points; frame_side is the guide square side in
    points. Both are None for photos that were not aligned in a scan frame.
    """

    image: np.ndarray
    screen_size: Optional[Tuple[float, float]] = None
    frame_side: Optional[float] = None
    source: str = "camera"
    captured_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ClassificationRequest:
    image: np.ndarray
    cropped: bool
    crop_box: Optional[Tuple[int, int, int, int]] = None
