from __future__ import annotations

import logging
from typing import Any, Dict, Literal

from ..clients.vertex import VertexClient
from ..config import clamp_sample_count
from ..errors import ImageGenerationError
from ..images import normalize_predictions
from ..types import CandidateImage
from .compositing import invert_mask

logger = logging.getLogger(__name__)

TransformMode = Literal["auto", "inpaint", "enhance", "generate"]

PRESERVE_INSTRUCTIONS = (
    "Preserve the product exactly: same shape, proportions, colours, texture and branding. "
    "Only change the background, lighting and staging. Do NOT replace or re-imagine the product. "
    "Photorealistic, clean studio e-commerce photo."
)


def background_prompt(product_name: str, image_prompt: str | None = None) -> str:
    base = image_prompt or f"{product_name} product photo"
    return f"{base}. A professional e-commerce background for '{product_name}', studio lighting, 4k."


class ImageTransformer:
    """Calls the image model to produce candidate listing images."""

    def __init__(
        self,
        client: VertexClient,
        image_model: str,
        inpaint_model: str | None = None,
        mode: TransformMode = "auto",
        scan_raw: bool = True,
    ) -> None:
        self._client = client
        self._image_model = image_model
        self._inpaint_model = inpaint_model or image_model
        self._mode = mode
        self._scan_raw = scan_raw

    def resolve_mode(self, has_mask: bool) -> TransformMode:
        if self._mode == "auto":
            return "inpaint" if has_mask else "enhance"
        if self._mode == "inpaint" and not has_mask:
            logger.warning("Inpainting requested without a mask; falling back to enhance")
            return "enhance"
        return self._mode

    def build_request(
        self,
        mode: TransformMode,
        prompt: str,
        image_b64: str,
        mask: CandidateImage | None,
        sample_count: int,
    ) -> tuple[str, Dict[str, Any]]:
        """Return ``(model, body)`` for the selected endpoint."""
        if mode == "generate":
            return self._image_model, {
                "instances": [{"prompt": prompt}],
                "parameters": {"sampleCount": sample_count},
            }

        strict_prompt = f"{prompt}\n{PRESERVE_INSTRUCTIONS}"
        if mode == "inpaint":
            if mask is None:
                raise ValueError("Inpainting requires a mask")
            return self._inpaint_model, {
                "instances": [
                    {
                        "prompt": strict_prompt,
                        "image": {"bytesBase64Encoded": image_b64},
                        # Editable region is white: the background, not the product.
                        "mask": {"image": {"bytesBase64Encoded": invert_mask(mask.base64_data)}},
                    }
                ],
                "parameters": {"sampleCount": sample_count, "mode": "inpainting", "guidanceScale": 9},
            }

        return self._image_model, {
            "instances": [{"prompt": strict_prompt, "image": {"bytesBase64Encoded": image_b64}}],
            "parameters": {"sampleCount": sample_count, "guidanceScale": 7.0},
        }

    async def transform(
        self,
        prompt: str,
        image_b64: str,
        mask: CandidateImage | None = None,
        sample_count: int = 1,
    ) -> list[CandidateImage]:
        """
        Generate up to ``sample_count`` (clamped to 1-4) distinct candidates.

        Raises
        ------
        ImageGenerationError
            If the model call fails.
        """
        count = clamp_sample_count(sample_count)
        mode = self.resolve_mode(mask is not None)
        model, body = self.build_request(mode, prompt, image_b64, mask, count)
        logger.info("Requesting %d candidate(s) via %s on %s", count, mode, model)

        response = await self._client.predict(model, body, error_cls=ImageGenerationError)
        candidates = normalize_predictions(response, limit=count, scan_raw=self._scan_raw)
        if not candidates:
            logger.warning("No images extracted from %s response (keys: %s)", model, sorted(response))
        else:
            logger.info("Image model returned %d candidate(s)", len(candidates))
        return candidates
