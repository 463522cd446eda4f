from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from ..clients.storage import SupabaseStorageClient
from ..errors import StorageUploadError
from ..images import decode_base64, extension_for_mime
from ..types import CandidateImage, UploadedImageRef

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def object_stem(namespace: str, timestamp_ms: int, index: int) -> str:
    """``generated/{namespace}/{timestamp}_{index}`` without extension."""
    return f"generated/{namespace}/{timestamp_ms}_{index}"


class CandidateUploader:
    """Uploads accepted candidates; one failed upload never aborts the others."""

    def __init__(
        self,
        storage: SupabaseStorageClient,
        upload_masks: bool = False,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._storage = storage
        self._upload_masks = upload_masks
        self._clock = clock

    async def upload_all(
        self,
        candidates: Sequence[CandidateImage],
        namespace: str,
        mask: CandidateImage | None = None,
    ) -> list[UploadedImageRef]:
        uploaded: list[UploadedImageRef] = []
        for index, candidate in enumerate(candidates):
            stem = object_stem(namespace, self._clock(), index)
            path = f"{stem}.{extension_for_mime(candidate.mime_type)}"
            try:
                content = decode_base64(candidate.base64_data)
                ref = await self._storage.upload(path, content, content_type=candidate.mime_type)
            except (StorageUploadError, ValueError) as exc:
                logger.warning("Upload failed for generated image %d: %s", index, exc)
                continue
            uploaded.append(ref)

            if self._upload_masks and mask is not None:
                await self._upload_mask(mask, f"{stem}_mask.png")

        logger.info("Uploaded %d of %d candidate(s)", len(uploaded), len(candidates))
        return uploaded

    async def _upload_mask(self, mask: CandidateImage, path: str) -> None:
        try:
            await self._storage.upload(path, decode_base64(mask.base64_data), content_type="image/png")
        except (StorageUploadError, ValueError) as exc:
            logger.warning("Failed to upload mask %s: %s", path, exc)
