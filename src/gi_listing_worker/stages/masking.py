from __future__ import annotations

import logging
from typing import Any, Dict

from ..clients.vertex import VertexClient, candidate_text
from ..errors import SegmentationError
from ..images import MASK_FIELD_NAMES, first_payload, to_candidate
from ..types import CandidateImage
from .compositing import load_mask

logger = logging.getLogger(__name__)


class MaskProducer:
    """Obtains a foreground (product) mask from a segmentation model."""

    def __init__(self, client: VertexClient, model: str) -> None:
        self._client = client
        self._model = model

    @staticmethod
    def build_request(image_b64: str) -> Dict[str, Any]:
        return {
            "instances": [{"image": {"bytesBase64Encoded": image_b64}}],
            "parameters": {"maskMode": "foreground"},
        }

    async def produce(self, image_b64: str) -> CandidateImage:
        """
        Return the mask as a PNG candidate (white = product, black = background).

        Raises
        ------
        SegmentationError
            If the call fails, the response carries no mask, or the mask does not
            decode to an image.
        """
        response = await self._client.predict(
            self._model, self.build_request(image_b64), error_cls=SegmentationError
        )
        predictions = response.get("predictions") or []
        mask = first_payload(predictions, MASK_FIELD_NAMES)
        if mask is None:
            text = candidate_text(response)
            if text.startswith("data:image"):
                mask = to_candidate(text)
        if mask is None:
            raise SegmentationError("Segmentation model returned no mask")
        try:
            size = load_mask(mask.base64_data).size
        except (OSError, ValueError) as exc:
            raise SegmentationError(f"Segmentation mask is not a decodable image: {exc}") from exc
        logger.debug("Segmentation mask is %dx%d", *size)
        logger.info("Segmentation mask obtained (%d base64 chars)", len(mask.base64_data))
        return mask
