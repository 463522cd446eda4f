"""
Best-effort structured extraction from generative model free text.

Models asked for "JSON only" still wrap answers in code fences or prose. The
extractor tries, in order: the whole text, the span between the first ``{`` and
the last ``}``, and finally each balanced object starting at a ``{``.
"""
from __future__ import annotations

import json
import math
from typing import Any, Mapping

from .errors import MetadataParseError
from .types import DEFAULT_CATEGORY, VisionMetadata

_DECODER = json.JSONDecoder()

# First key present wins; aliases were observed in model outputs.
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "product_name": ("product_name", "name"),
    "category": ("category", "category_name"),
    "description": ("description", "desc"),
    "price": ("price", "estimated_price"),
    "stock": ("stock", "stock_count"),
    "image_prompt": ("image_prompt", "image_prompt_text"),
}


def extract_json_object(text: str | None) -> dict[str, Any]:
    """
    Return the first JSON object found in ``text``.

    Raises
    ------
    MetadataParseError
        If no JSON object can be decoded.
    """
    if not text or not text.strip():
        raise MetadataParseError("Model output is empty", text=text)

    stripped = text.strip()
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end <= start:
        raise MetadataParseError("Model output contains no JSON object", text=text)

    try:
        parsed = json.loads(stripped[start : end + 1])
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    index = start
    while index != -1:
        try:
            candidate, _ = _DECODER.raw_decode(stripped, index)
        except json.JSONDecodeError:
            candidate = None
        if isinstance(candidate, dict):
            return candidate
        index = stripped.find("{", index + 1)

    raise MetadataParseError("Model output contains no parseable JSON object", text=text)


def _first_present(data: Mapping[str, Any], field: str) -> Any:
    for key in _FIELD_ALIASES[field]:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _coerce_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        for prefix in ("₹", "$", "Rs.", "Rs", "INR"):
            if value.startswith(prefix):
                value = value[len(prefix) :].strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def _coerce_price(value: Any) -> float | int:
    number = _coerce_number(value)
    return int(number) if number.is_integer() else number


def _coerce_stock(value: Any) -> int:
    return int(_coerce_number(value))


def _coerce_text(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value if value.strip() else default
    return str(value)


def metadata_from_mapping(data: Mapping[str, Any], product_name: str) -> VisionMetadata:
    """Build metadata from parsed JSON, defaulting each missing field individually."""
    name = _coerce_text(_first_present(data, "product_name"), product_name)
    return VisionMetadata(
        product_name=name,
        category=_coerce_text(_first_present(data, "category"), DEFAULT_CATEGORY),
        description=_coerce_text(_first_present(data, "description"), ""),
        price=_coerce_price(_first_present(data, "price")),
        stock=_coerce_stock(_first_present(data, "stock")),
        image_prompt=_coerce_text(
            _first_present(data, "image_prompt"), f"{product_name} product photo"
        ),
    )


def parse_vision_metadata(text: str | None, product_name: str) -> VisionMetadata:
    """
    Parse vision model output into ``VisionMetadata``.

    Raises
    ------
    MetadataParseError
        If the text holds no JSON object at all. Once an object is found,
        missing keys never fail the parse.
    """
    return metadata_from_mapping(extract_json_object(text), product_name)
