from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .clients.source import SourceImageFetcher
from .config import PipelineConfig
from .errors import (
    AllUploadsFailed,
    ImageGenerationError,
    MaskGenerationFailed,
    MetadataParseError,
    NoImagesGenerated,
    OrchestrationFailed,
    SourceImageError,
    TokenError,
    UpstreamError,
)
from .images import encode_base64
from .stages.compositing import composite_product
from .stages.fidelity import FidelityGate
from .stages.masking import MaskProducer
from .stages.metadata import MetadataExtractor
from .stages.persistence import CandidateUploader
from .stages.transform import ImageTransformer, background_prompt
from .stages.upscale import Upscaler
from .types import CandidateImage, OrchestrationRequest, OrchestrationResult, SourceImage, VisionMetadata

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ListingPipeline:
    """
    Sequential orchestration of one listing request.

    fetch -> vision metadata -> (mask) -> transform -> (composite, upscale) ->
    fidelity gate -> upload. Each stage runs once; nothing is shared between
    requests except the injected clients.
    """

    fetcher: SourceImageFetcher
    extractor: MetadataExtractor
    transformer: ImageTransformer
    uploader: CandidateUploader
    gate: FidelityGate | None = None
    mask_producer: MaskProducer | None = None
    upscaler: Upscaler | None = None
    config: PipelineConfig = field(default_factory=PipelineConfig)

    async def run(self, request: OrchestrationRequest) -> OrchestrationResult:
        logger.info("Orchestration started for %r (maker=%s)", request.product_name, request.storage_namespace)

        try:
            source = await self.fetcher.fetch(request.image_url)
        except SourceImageError as exc:
            raise OrchestrationFailed(str(exc)) from exc

        metadata = await self._extract_metadata(source, request.product_name)
        image_b64 = encode_base64(source.content)

        mask: CandidateImage | None = None
        if self.mask_producer is not None:
            try:
                mask = await self.mask_producer.produce(image_b64)
            except UpstreamError as exc:
                logger.error("Mask generation failed: %s", exc)
                raise MaskGenerationFailed(str(exc), vision=metadata) from exc

        if mask is not None:
            prompt = background_prompt(metadata.product_name, metadata.image_prompt)
        else:
            prompt = metadata.image_prompt or f"{metadata.product_name} product photo"

        try:
            raw_candidates = await self.transformer.transform(
                prompt, image_b64, mask=mask, sample_count=self.config.max_images
            )
        except (ImageGenerationError, TokenError) as exc:
            raise OrchestrationFailed(f"Image generation failed: {exc}") from exc
        if not raw_candidates:
            raise NoImagesGenerated(vision=metadata)

        accepted = await self._finalize_candidates(source, raw_candidates, mask)
        if not accepted:
            raise NoImagesGenerated("No candidate passed post-processing and fidelity checks", vision=metadata)

        uploads = await self.uploader.upload_all(accepted, request.storage_namespace, mask=mask)
        if not uploads:
            raise AllUploadsFailed(vision=metadata)

        logger.info(
            "Orchestration finished for %r: %d image(s) generated",
            metadata.product_name,
            len(uploads),
        )
        return OrchestrationResult(metadata=metadata, uploads=uploads)

    async def _extract_metadata(self, source: SourceImage, product_name: str) -> VisionMetadata:
        try:
            return await self.extractor.extract(source, product_name)
        except (UpstreamError, MetadataParseError) as exc:
            if self.config.vision_failure_policy == "strict":
                raise OrchestrationFailed(f"Vision model failed: {exc}") from exc
            logger.warning("Vision metadata extraction failed, using defaults: %s", exc)
            return VisionMetadata.defaults_for(product_name)

    async def _finalize_candidates(
        self,
        source: SourceImage,
        candidates: list[CandidateImage],
        mask: CandidateImage | None,
    ) -> list[CandidateImage]:
        gate = self.gate if self.gate is not None and self.gate.enabled else None
        if gate is not None and mask is None:
            # Whole-frame metrics reject any restaged background.
            logger.warning("Fidelity gate skipped: no segmentation mask to restrict it to product pixels")
            gate = None

        accepted: list[CandidateImage] = []
        for index, candidate in enumerate(candidates):
            if mask is not None and self.config.composite_product:
                try:
                    candidate = composite_product(source.content, mask.base64_data, candidate)
                except (OSError, ValueError) as exc:
                    logger.warning("Compositing failed for candidate %d, skipping: %s", index, exc)
                    continue

            if self.upscaler is not None:
                candidate = await self.upscaler.upscale(candidate)

            if gate is not None and not gate.accepts(source.content, candidate, mask):
                logger.warning("Candidate %d failed fidelity checks, dropping", index)
                continue
            accepted.append(candidate)
        return accepted
