"""
Export a Hugging Face image-classification checkpoint to the single-file ONNX
model and id2label JSON that OnnxFoodClassifier loads.

    python export_classifier_to_onnx.py [checkpoint_dir]

Output paths follow CLASSIFIER_MODEL_PATH / CLASSIFIER_LABELS_PATH.
"""

import json
import logging
import os
import sys

import onnx
import torch
from transformers import AutoConfig, AutoModelForImageClassification

from meal_scan.config import CLASSIFIER_INPUT_SIZE, CLASSIFIER_LABELS_PATH, CLASSIFIER_MODEL_PATH

logger = logging.getLogger("export_classifier")

CHECKPOINT_DIR = os.getenv("CLASSIFIER_CHECKPOINT_DIR", "models_dev/food_classifier")


def input_size(config) -> int:
    img_size = getattr(config, "image_size", None) or getattr(config, "size", None)
    if isinstance(img_size, dict):
        return img_size.get("height") or img_size.get("shortest_edge") or list(img_size.values())[0]
    if isinstance(img_size, int):
        return img_size
    return CLASSIFIER_INPUT_SIZE


def export(checkpoint_dir: str, onnx_path: str, labels_path: str) -> None:
    logger.info("Loading config & model from %s", checkpoint_dir)
    config = AutoConfig.from_pretrained(checkpoint_dir)
    model = AutoModelForImageClassification.from_pretrained(checkpoint_dir)
    model.eval()

    side = input_size(config)
    logger.info("Using input size: %sx%s", side, side)
    dummy = torch.randn(1, 3, side, side)

    os.makedirs(os.path.dirname(onnx_path) or ".", exist_ok=True)
    torch.onnx.export(
        model,
        dummy,
        onnx_path,
        input_names=["input"],
        output_names=["logits"],
        opset_version=17,
        dynamic_axes={"input": {0: "batch"}, "logits": {0: "batch"}},
        do_constant_folding=True,
        verbose=False,
    )
    logger.info("Raw ONNX export complete: %s", onnx_path)

    # merge external weights so the classifier ships as one file
    model_proto = onnx.load(onnx_path, load_external_data=False)
    onnx.load_external_data_for_model(model_proto, os.path.dirname(onnx_path) or ".")
    onnx.save_model(model_proto, onnx_path, save_as_external_data=False)

    data_path = onnx_path + ".data"
    if os.path.exists(data_path):
        os.remove(data_path)
        logger.info("Removed external weight file: %s", data_path)

    id2label = getattr(config, "id2label", None)
    if id2label:
        with open(labels_path, "w", encoding="utf-8") as f:
            json.dump({str(k): v for k, v in id2label.items()}, f, ensure_ascii=False, indent=2)
        logger.info("Saved %s labels to %s", len(id2label), labels_path)
    else:
        logger.warning("Checkpoint has no id2label; classifier will report class ids")


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stdout,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    checkpoint_dir = sys.argv[1] if len(sys.argv) > 1 else CHECKPOINT_DIR
    export(checkpoint_dir, CLASSIFIER_MODEL_PATH, CLASSIFIER_LABELS_PATH)


if __name__ == "__main__":
    main()
