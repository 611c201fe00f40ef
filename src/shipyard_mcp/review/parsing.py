"""Permissive extraction of the JSON verdict from free-form model output."""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from .models import ReviewResult


class ReviewParseError(ValueError):
    """Raised when reviewer output contains no usable verdict."""


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first well-formed JSON object in ``text``.

    Surrounding prose and markdown fences are ignored.
    """

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    raise ReviewParseError("No JSON object found in reviewer output")


def parse_review(text: str) -> ReviewResult:
    payload = extract_json_object(text)
    try:
        return ReviewResult.model_validate(payload)
    except ValidationError as exc:
        raise ReviewParseError(f"Reviewer verdict has an unexpected shape: {exc}") from exc


__all__ = ["ReviewParseError", "extract_json_object", "parse_review"]
