"""
Fidelity gate: reject generated images that altered the product itself.

Metrics are computed on product pixels only when a mask is available, and on the
whole frame otherwise. Both images are resampled to a common width first.
"""
from __future__ import annotations

import io
import logging
import math

import numpy as np
from PIL import Image

from ..config import FidelityConfig
from ..images import decode_base64
from ..types import CandidateImage, FidelityReport
from .compositing import LANCZOS, load_mask

logger = logging.getLogger(__name__)

MAX_PIXEL_VALUE = 255.0


def _sample_size(size: tuple[int, int], width: int) -> tuple[int, int]:
    w, h = size
    scale = width / float(w)
    return width, max(1, int(round(h * scale)))


def _load_rgb(content: bytes, size: tuple[int, int] | None = None) -> Image.Image:
    with Image.open(io.BytesIO(content)) as image:
        rgb = image.convert("RGB")
    if size is not None and rgb.size != size:
        rgb = rgb.resize(size, LANCZOS)
    return rgb


def compute_metrics(
    original: np.ndarray,
    candidate: np.ndarray,
    region: np.ndarray | None = None,
) -> tuple[float, float, float, int]:
    """
    Return ``(mse, psnr, color_delta, pixels)`` for two HxWx3 uint8 arrays.

    ``region`` is an optional HxW boolean array selecting the pixels to compare.
    PSNR is ``inf`` for identical inputs.
    """
    if original.shape != candidate.shape:
        raise ValueError(f"Shape mismatch: {original.shape} vs {candidate.shape}")
    orig = original.astype(np.float64)
    cand = candidate.astype(np.float64)
    if region is not None:
        orig = orig[region]
        cand = cand[region]
    else:
        orig = orig.reshape(-1, 3)
        cand = cand.reshape(-1, 3)

    pixels = int(orig.shape[0])
    if pixels == 0:
        return 0.0, 0.0, 0.0, 0

    mse = float(np.mean((orig - cand) ** 2))
    psnr = math.inf if mse == 0 else 10.0 * math.log10(MAX_PIXEL_VALUE**2 / mse)
    color_delta = float(np.mean(np.abs(orig.mean(axis=1) - cand.mean(axis=1))))
    return mse, psnr, color_delta, pixels


class FidelityGate:
    """Accepts or rejects candidates against PSNR, MSE and colour-delta thresholds."""

    def __init__(self, config: FidelityConfig) -> None:
        self._config = config

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def judge(self, mse: float, psnr: float, color_delta: float, pixels: int) -> FidelityReport:
        cfg = self._config
        reason: str | None = None
        if pixels == 0:
            reason = "no product pixels to compare"
        elif psnr < cfg.min_psnr:
            reason = f"PSNR {psnr:.2f} below {cfg.min_psnr}"
        elif mse > cfg.max_mse:
            reason = f"MSE {mse:.2f} above {cfg.max_mse}"
        elif color_delta > cfg.max_color_delta:
            reason = f"colour delta {color_delta:.2f} above {cfg.max_color_delta}"
        return FidelityReport(
            mse=mse,
            psnr=psnr,
            color_delta=color_delta,
            pixels_compared=pixels,
            accepted=reason is None,
            reason=reason,
        )

    def evaluate(
        self,
        original: bytes,
        candidate: CandidateImage,
        mask: CandidateImage | None = None,
    ) -> FidelityReport:
        try:
            original_rgb = _load_rgb(original)
            size = _sample_size(original_rgb.size, self._config.sample_width)
            original_rgb = original_rgb.resize(size, LANCZOS) if original_rgb.size != size else original_rgb
            candidate_rgb = _load_rgb(decode_base64(candidate.base64_data), size)
            region = None
            if mask is not None:
                region = np.asarray(load_mask(mask.base64_data, size), dtype=np.uint8) > 128
        except (OSError, ValueError) as exc:
            logger.warning("Fidelity check could not decode images: %s", exc)
            return FidelityReport(
                mse=math.inf,
                psnr=0.0,
                color_delta=math.inf,
                pixels_compared=0,
                accepted=False,
                reason=f"decode failed: {exc}",
            )

        report = self.judge(
            *compute_metrics(
                np.asarray(original_rgb, dtype=np.uint8),
                np.asarray(candidate_rgb, dtype=np.uint8),
                region,
            )
        )
        logger.info("Fidelity metrics: %s", dict(report.as_log_fields()))
        if not report.accepted:
            logger.warning("Candidate rejected by fidelity gate: %s", report.reason)
        return report

    def accepts(
        self,
        original: bytes,
        candidate: CandidateImage,
        mask: CandidateImage | None = None,
    ) -> bool:
        return self.evaluate(original, candidate, mask).accepted
