"""
Exception hierarchy for the listing worker.

``WorkerError`` subclasses end a request with a stable error code; ``UpstreamError``
subclasses describe a failed outbound call and are translated by the pipeline.
"""
from __future__ import annotations

from typing import Any

from .types import VisionMetadata


class WorkerError(RuntimeError):
    """A failure that maps directly onto an HTTP error response."""

    status_code = 500
    code = "orchestration_failed"

    def __init__(
        self,
        details: str | None = None,
        *,
        vision: VisionMetadata | None = None,
    ) -> None:
        super().__init__(details or self.code)
        self.details = details
        self.vision = vision

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code}
        if self.details:
            payload["details"] = self.details
        if self.vision is not None:
            payload["vision"] = self.vision.as_dict()
        return payload


class UnauthorizedError(WorkerError):
    status_code = 401
    code = "unauthorized"

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code}


class InvalidRequestError(WorkerError):
    status_code = 400
    code = "missing image_url or product_name"

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code}


class InvalidMakerIdError(InvalidRequestError):
    """``maker_id`` would leave its ``generated/{maker_id}/`` storage prefix."""

    code = "invalid maker_id"


class NotReadyError(WorkerError):
    status_code = 500
    code = "server_not_ready"


class OrchestrationFailed(WorkerError):
    status_code = 500
    code = "orchestration_failed"


class MaskGenerationFailed(WorkerError):
    status_code = 502
    code = "mask_generation_failed"


class NoImagesGenerated(WorkerError):
    status_code = 502
    code = "no_images_generated"


class AllUploadsFailed(WorkerError):
    status_code = 502
    code = "all_image_uploads_failed"


class UpstreamError(RuntimeError):
    """An outbound call failed or returned an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TokenError(UpstreamError):
    pass


class SourceImageError(UpstreamError):
    pass


class VisionModelError(UpstreamError):
    pass


class SegmentationError(UpstreamError):
    pass


class ImageGenerationError(UpstreamError):
    pass


class StorageUploadError(UpstreamError):
    pass


class MetadataParseError(ValueError):
    """Model output contained no parseable JSON object."""

    def __init__(self, message: str, *, text: str | None = None) -> None:
        super().__init__(message)
        self.text = text
