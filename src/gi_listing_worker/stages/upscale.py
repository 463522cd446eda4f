from __future__ import annotations

import logging

from ..clients.vertex import VertexClient
from ..errors import ImageGenerationError, UpstreamError
from ..images import normalize_predictions
from ..types import CandidateImage

logger = logging.getLogger(__name__)


class Upscaler:
    """Optional super-resolution pass; any failure keeps the input image."""

    def __init__(self, client: VertexClient, model: str, factor: str = "x2") -> None:
        self._client = client
        self._model = model
        self._factor = factor

    async def upscale(self, candidate: CandidateImage) -> CandidateImage:
        body = {
            "instances": [{"prompt": "", "image": {"bytesBase64Encoded": candidate.base64_data}}],
            "parameters": {"sampleCount": 1, "mode": "upscale", "upscaleConfig": {"upscaleFactor": self._factor}},
        }
        try:
            response = await self._client.predict(self._model, body, error_cls=ImageGenerationError)
        except UpstreamError as exc:
            logger.warning("Super-resolution failed, keeping original candidate: %s", exc)
            return candidate

        upscaled = normalize_predictions(response, limit=1, scan_raw=False)
        if not upscaled:
            logger.warning("Super-resolution returned no image, keeping original candidate")
            return candidate
        return upscaled[0]
