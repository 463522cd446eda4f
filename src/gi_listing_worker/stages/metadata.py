from __future__ import annotations

import logging
from typing import Any, Dict

from ..clients.vertex import VertexClient, candidate_text
from ..errors import MetadataParseError, VisionModelError
from ..extraction import parse_vision_metadata
from ..images import encode_base64
from ..types import SourceImage, VisionMetadata

logger = logging.getLogger(__name__)

VISION_PROMPT = """You are an assistant that extracts product metadata from an image and product name.
Return VALID JSON ONLY with keys:
product_name, category, description, price, stock, image_prompt.
- description: 1-2 sentences for an e-commerce listing.
- price: approximate number in INR.
- stock: approximate integer.
- image_prompt: a short prompt describing a clean studio product photo of this item.
Base values on the image and the product name: "{product_name}".
"""


class MetadataExtractor:
    """Asks the vision model for listing metadata describing the source image."""

    def __init__(self, client: VertexClient, model: str, max_output_tokens: int = 1024) -> None:
        self._client = client
        self._model = model
        self._max_output_tokens = max_output_tokens

    def build_request(self, image: SourceImage, product_name: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": VISION_PROMPT.format(product_name=product_name)},
                        {
                            "inlineData": {
                                "mimeType": image.mime_type,
                                "data": encode_base64(image.content),
                            }
                        },
                    ],
                }
            ],
            "generationConfig": {
                "temperature": 0.2,
                "maxOutputTokens": self._max_output_tokens,
                "responseMimeType": "application/json",
            },
        }

    async def extract(self, image: SourceImage, product_name: str) -> VisionMetadata:
        """
        Return metadata for ``image``.

        Raises
        ------
        VisionModelError
            If the model call fails.
        MetadataParseError
            If the model answered without any JSON object.
        """
        response = await self._client.generate_content(
            self._model,
            self.build_request(image, product_name),
            error_cls=VisionModelError,
        )
        text = candidate_text(response)
        if not text:
            raise MetadataParseError("Empty response from vision model")
        metadata = parse_vision_metadata(text, product_name)
        logger.info(
            "Vision metadata: category=%s price=%s stock=%s",
            metadata.category,
            metadata.price,
            metadata.stock,
        )
        return metadata
