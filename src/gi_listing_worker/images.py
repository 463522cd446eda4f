from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any, Iterable, Mapping, Sequence

from .types import CandidateImage

# Ordered: the first field holding a usable payload wins.
IMAGE_FIELD_NAMES: tuple[str, ...] = (
    "bytesBase64Encoded",
    "imageBytesBase64",
    "image",
    "data",
    "b64_json",
    "output",
)
MASK_FIELD_NAMES: tuple[str, ...] = (
    "categoryMask",
    "maskBytesBase64",
    "mask",
    "mask_base64",
) + IMAGE_FIELD_NAMES

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)
_BASE64_RUN_RE = re.compile(r"[A-Za-z0-9+/]{200,}={0,2}")

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/bmp": "bmp",
}


def split_data_uri(value: str) -> tuple[str | None, str]:
    """Return ``(mime_type, base64_payload)``; mime is None for bare base64."""
    match = _DATA_URI_RE.match(value.strip())
    if match:
        return match.group("mime").lower(), match.group("data")
    return None, value.strip()


def to_candidate(value: str, default_mime: str = "image/png") -> CandidateImage:
    mime, payload = split_data_uri(value)
    return CandidateImage(base64_data=payload, mime_type=mime or default_mime)


def decode_base64(payload: str) -> bytes:
    """Decode a base64 payload or data URI, tolerating missing padding."""
    _, data = split_data_uri(payload)
    data = "".join(data.split())
    data += "=" * (-len(data) % 4)
    try:
        return base64.b64decode(data, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise ValueError(f"Invalid base64 image data: {exc}") from exc


def encode_base64(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def extension_for_mime(mime_type: str | None) -> str:
    if not mime_type:
        return "png"
    return _EXTENSIONS.get(mime_type.lower(), "png")


def detect_mime_type(content: bytes, default: str = "image/jpeg") -> str:
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if content[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    if content.startswith(b"GIF8"):
        return "image/gif"
    if content[:2] == b"BM":
        return "image/bmp"
    return default


def extract_image_payload(
    entry: Any,
    field_names: Sequence[str] = IMAGE_FIELD_NAMES,
) -> CandidateImage | None:
    """
    Pull one base64 image out of a prediction entry.

    ``entry`` may be a data URI string, or a mapping whose recognised field holds
    either a string or a nested mapping (``{"image": {"bytesBase64Encoded": ...}}``).
    """
    if isinstance(entry, str):
        if entry.startswith("data:image"):
            return to_candidate(entry)
        return None
    if not isinstance(entry, Mapping):
        return None

    default_mime = entry.get("mimeType") or entry.get("mime_type") or "image/png"
    for name in field_names:
        value = entry.get(name)
        if isinstance(value, str) and value:
            return to_candidate(value, default_mime=default_mime)
        if isinstance(value, Mapping):
            nested = extract_image_payload(value, field_names)
            if nested is not None:
                return nested
        if isinstance(value, list) and value:
            nested = extract_image_payload(value[0], field_names)
            if nested is not None:
                return nested
    return None


def scan_for_base64(text: str) -> CandidateImage | None:
    """Last resort: the first long base64-looking run in ``text``."""
    match = _BASE64_RUN_RE.search(text)
    if match is None:
        return None
    return CandidateImage(base64_data=match.group(0))


def _prediction_entries(response: Mapping[str, Any]) -> list[Any]:
    for key in ("predictions", "images", "data", "outputs"):
        value = response.get(key)
        if isinstance(value, list) and value:
            return value
    return [response]


def normalize_predictions(
    response: Mapping[str, Any],
    limit: int | None = None,
    *,
    scan_raw: bool = True,
) -> list[CandidateImage]:
    """
    Normalise an image ``predict`` response into distinct candidates.

    Recognised field names are tried in ``IMAGE_FIELD_NAMES`` order; entries with
    none of them are optionally scanned for a raw base64 run.
    """
    results: list[CandidateImage] = []
    seen: set[str] = set()
    for entry in _prediction_entries(response):
        candidate = extract_image_payload(entry)
        if candidate is None and scan_raw:
            candidate = scan_for_base64(json.dumps(entry) if not isinstance(entry, str) else entry)
        if candidate is None or candidate.base64_data in seen:
            continue
        seen.add(candidate.base64_data)
        results.append(candidate)
    if limit is not None:
        results = results[:limit]
    return results


def first_payload(entries: Iterable[Any], field_names: Sequence[str]) -> CandidateImage | None:
    for entry in entries:
        candidate = extract_image_payload(entry, field_names)
        if candidate is not None:
            return candidate
    return None
