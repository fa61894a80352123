"""Utility functions."""

import json
import re


def extract_json(text: str) -> dict:
    """
    Clean Markdown, ```json fences, surrounding prose.
    Return Json object.
    """
    if not text:
        raise ValueError("Empty model output")

    # Unwrap ```json ... ``` fences, keeping their body
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, flags=re.S)
    if fenced:
        text = fenced.group(1)

    # Find first { and last }
    start = text.find("{")
    end = text.rfind("}")

    if start == -1 or end == -1:
        raise ValueError("No JSON object detected")

    cleaned = text[start:end+1]

    return json.loads(cleaned)


def clean_food_identifier(identifier: str) -> str:
    """Classifier identifier -> lowercase words ("n07753592_banana" -> "banana")."""
    cleaned = identifier.replace("_", " ")
    cleaned = re.sub(r"n\d+", "", cleaned)
    return " ".join(cleaned.lower().split())


def format_food_label(label: str) -> str:
    return " ".join(word.capitalize() for word in label.split(" ") if word)
