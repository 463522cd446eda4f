from __future__ import annotations

import io

from PIL import Image, ImageChops, ImageFilter

from ..images import decode_base64, encode_base64
from ..types import CandidateImage

LANCZOS = Image.Resampling.LANCZOS


def load_mask(mask_b64: str, size: tuple[int, int] | None = None) -> Image.Image:
    """Decode a mask into single-channel ``L`` mode, optionally resized."""
    with Image.open(io.BytesIO(decode_base64(mask_b64))) as mask_image:
        mask_l = mask_image.convert("L")
    if size is not None and mask_l.size != size:
        mask_l = mask_l.resize(size, LANCZOS)
    return mask_l


def invert_mask(mask_b64: str) -> str:
    """Binarise and invert a product mask so the background becomes the editable (white) region."""
    mask_l = load_mask(mask_b64)
    inverted = mask_l.point(lambda value: 0 if value > 127 else 255)
    with io.BytesIO() as buffer:
        inverted.save(buffer, format="PNG")
        return encode_base64(buffer.getvalue())


def composite_product(
    original: bytes,
    mask_b64: str,
    candidate: CandidateImage,
) -> CandidateImage:
    """
    Paste the original product pixels over a generated background.

    The generated image is resized to the original frame; the mask is dilated and
    feathered outward so the seam blends without touching product pixels.
    """
    with Image.open(io.BytesIO(original)) as original_image:
        original_rgba = original_image.convert("RGBA")
    with Image.open(io.BytesIO(decode_base64(candidate.base64_data))) as generated_image:
        generated_rgba = generated_image.convert("RGBA")

    if generated_rgba.size != original_rgba.size:
        generated_rgba = generated_rgba.resize(original_rgba.size, LANCZOS)
    mask_l = load_mask(mask_b64, original_rgba.size)

    binary = mask_l.point(lambda value: 255 if value > 127 else 0)
    feather = binary.filter(ImageFilter.MaxFilter(5)).filter(ImageFilter.GaussianBlur(radius=2))
    # Product pixels stay fully opaque; only the outer edge is feathered.
    refined_mask = ImageChops.lighter(binary, feather)

    composite = generated_rgba.copy()
    composite.paste(original_rgba, mask=refined_mask)

    with io.BytesIO() as buffer:
        composite.convert("RGB").save(buffer, format="PNG")
        return CandidateImage(base64_data=encode_base64(buffer.getvalue()), mime_type="image/png")
