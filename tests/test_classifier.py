import json

import numpy as np
import pytest

from conftest import make_image
from meal_scan.errors import InvalidImage, LowConfidence, ModelNotLoaded, NoResults, PredictionFailed
from meal_scan.models import ClassificationRequest
from meal_scan.scan_pipeline.classifier import OnnxFoodClassifier, build_classifier
from meal_scan.scan_pipeline.gpt_classifier import OpenAIVisionClassifier


class FakeOrtSession:
    def __init__(self, logits=None, error=None):
        self.logits = logits
        self.error = error
        self.feeds = []

    def run(self, output_names, feeds):
        self.feeds.append(feeds)
        if self.error:
            raise self.error
        return [np.asarray(self.logits, dtype=np.float32)]


def _classifier(tmp_path, catalog, session=None, labels=None) -> OnnxFoodClassifier:
    clf = OnnxFoodClassifier(
        model_path=str(tmp_path / "missing.onnx"),
        labels_path=str(tmp_path / "missing.json"),
        catalog=catalog,
    )
    if session is not None:
        clf.session = session
        clf.input_name = "input"
        clf.output_name = "logits"
        clf.labels = labels or {0: "n07753592_banana", 1: "apple", 2: "durian"}
    return clf


def _request(image=None) -> ClassificationRequest:
    return ClassificationRequest(image=make_image(300, 300) if image is None else image, cropped=True)


def test_missing_model_reports_not_loaded(tmp_path, catalog):
    clf = _classifier(tmp_path, catalog)
    assert not clf.is_loaded
    with pytest.raises(ModelNotLoaded):
        clf.classify(_request())


def test_top_class_becomes_prediction_with_catalog_nutrition(tmp_path, catalog):
    session = FakeOrtSession(logits=[[5.0, 0.0, 0.0]])
    clf = _classifier(tmp_path, catalog, session)

    prediction = clf.classify(_request())

    assert prediction.label == "Banana"
    assert prediction.confidence == pytest.approx(np.exp(5) / (np.exp(5) + 2), rel=1e-5)
    assert prediction.nutrition.calories == 105
    assert session.feeds[0]["input"].shape == (1, 3, 224, 224)


def test_unknown_food_gets_default_nutrition(tmp_path, catalog):
    clf = _classifier(tmp_path, catalog, FakeOrtSession(logits=[[0.0, 0.0, 6.0]]))
    prediction = clf.classify(_request())
    assert prediction.label == "Durian"
    assert prediction.nutrition.calories == 200


def test_missing_label_falls_back_to_class_id(tmp_path, catalog):
    clf = _classifier(tmp_path, catalog, FakeOrtSession(logits=[[0.0, 0.0, 0.0, 9.0]]))
    assert clf.classify(_request()).label == "Class 3"


def test_flat_distribution_is_low_confidence(tmp_path, catalog):
    clf = _classifier(tmp_path, catalog, FakeOrtSession(logits=[[1.0] * 10]))
    with pytest.raises(LowConfidence):
        clf.classify(_request())


def test_empty_output_is_no_results(tmp_path, catalog):
    clf = _classifier(tmp_path, catalog, FakeOrtSession(logits=np.zeros((1, 0))))
    with pytest.raises(NoResults):
        clf.classify(_request())


def test_inference_error_is_prediction_failed(tmp_path, catalog):
    clf = _classifier(tmp_path, catalog, FakeOrtSession(error=RuntimeError("bad input shape")))
    with pytest.raises(PredictionFailed) as exc:
        clf.classify(_request())
    assert exc.value.message == "Analysis failed: bad input shape"


@pytest.mark.parametrize(
    "image",
    [np.zeros((0, 0, 3), dtype=np.uint8), np.zeros((10, 10), dtype=np.uint8), None],
)
def test_invalid_image(tmp_path, catalog, image):
    clf = _classifier(tmp_path, catalog, FakeOrtSession(logits=[[5.0, 0.0, 0.0]]))
    with pytest.raises(InvalidImage):
        clf.classify(ClassificationRequest(image=image, cropped=False))


def test_labels_accept_dict_and_list(tmp_path):
    as_dict = tmp_path / "dict.json"
    as_dict.write_text(json.dumps({"0": "apple", "1": "banana"}), encoding="utf-8")
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps(["apple", "banana"]), encoding="utf-8")

    assert OnnxFoodClassifier._load_labels(str(as_dict)) == {0: "apple", 1: "banana"}
    assert OnnxFoodClassifier._load_labels(str(as_list)) == {0: "apple", 1: "banana"}
    assert OnnxFoodClassifier._load_labels(str(tmp_path / "nope.json")) == {}


def test_build_classifier_selects_backend():
    assert isinstance(build_classifier("openai"), OpenAIVisionClassifier)
    assert isinstance(build_classifier("ONNX"), OnnxFoodClassifier)
