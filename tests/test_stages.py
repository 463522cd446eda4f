from __future__ import annotations

import asyncio
import io
import json
import math

import httpx
import numpy as np
import pytest
from PIL import Image

from gi_listing_worker.clients import StaticTokenProvider, SupabaseStorageClient, VertexClient
from gi_listing_worker.config import FidelityConfig, StorageConfig, VertexConfig
from gi_listing_worker.errors import ImageGenerationError, SegmentationError, StorageUploadError, TokenError
from gi_listing_worker.images import decode_base64
from gi_listing_worker.stages import CandidateUploader, FidelityGate, ImageTransformer, MaskProducer, Upscaler
from gi_listing_worker.stages.compositing import composite_product, invert_mask
from gi_listing_worker.stages.fidelity import compute_metrics
from gi_listing_worker.stages.persistence import object_stem
from gi_listing_worker.types import CandidateImage
from helpers import SUPABASE_URL, b64, mask_bytes, png_bytes, predictions

SQUARE = (16, 16, 47, 47)


def _vertex(handler) -> VertexClient:
    config = VertexConfig(project_id="p", vision_model="vision-model", image_model="image-model")
    return VertexClient(config, StaticTokenProvider("t"), transport=httpx.MockTransport(handler))


def _pixels(candidate: CandidateImage) -> np.ndarray:
    with Image.open(io.BytesIO(decode_base64(candidate.base64_data))) as image:
        return np.asarray(image.convert("RGB"))


# fidelity


def test_identical_images_are_accepted():
    gate = FidelityGate(FidelityConfig())
    image = png_bytes((120, 80, 40), square=SQUARE)
    report = gate.evaluate(image, CandidateImage(b64(image)))
    assert report.accepted
    assert report.mse == 0
    assert math.isinf(report.psnr)
    assert report.color_delta == 0


def test_mse_above_threshold_is_rejected():
    gate = FidelityGate(FidelityConfig(min_psnr=0.0, max_mse=10.0, max_color_delta=255.0, sample_width=64))
    report = gate.evaluate(png_bytes((100, 100, 100)), CandidateImage(b64(png_bytes((110, 110, 110)))))
    assert not report.accepted
    assert report.mse == pytest.approx(100.0)
    assert report.reason.startswith("MSE")


def test_low_psnr_is_rejected_first():
    gate = FidelityGate(FidelityConfig(sample_width=64))
    report = gate.evaluate(png_bytes((0, 0, 0)), CandidateImage(b64(png_bytes((255, 255, 255)))))
    assert not report.accepted
    assert report.reason.startswith("PSNR")


def test_color_delta_is_checked():
    gate = FidelityGate(FidelityConfig(min_psnr=0.0, max_mse=1000.0, max_color_delta=6.0, sample_width=64))
    report = gate.evaluate(png_bytes((100, 100, 100)), CandidateImage(b64(png_bytes((110, 110, 110)))))
    assert not report.accepted
    assert report.color_delta == pytest.approx(10.0)
    assert report.reason.startswith("colour delta")


def test_mask_limits_comparison_to_product_pixels():
    gate = FidelityGate(FidelityConfig(sample_width=64))
    original = png_bytes((255, 255, 255), square=SQUARE, square_color=(180, 40, 40))
    new_background = png_bytes((0, 90, 0), square=SQUARE, square_color=(180, 40, 40))
    mask = CandidateImage(b64(mask_bytes(square=SQUARE)))

    assert not gate.accepts(original, CandidateImage(b64(new_background)))
    report = gate.evaluate(original, CandidateImage(b64(new_background)), mask)
    assert report.accepted
    assert report.pixels_compared == 32 * 32


def test_empty_mask_region_is_rejected():
    gate = FidelityGate(FidelityConfig(sample_width=64))
    image = png_bytes()
    empty_mask = CandidateImage(b64(mask_bytes(square=None)))
    report = gate.evaluate(image, CandidateImage(b64(image)), empty_mask)
    assert not report.accepted
    assert report.pixels_compared == 0


def test_undecodable_candidate_is_rejected():
    report = FidelityGate(FidelityConfig()).evaluate(png_bytes(), CandidateImage(b64(b"not an image")))
    assert not report.accepted
    assert report.reason.startswith("decode failed")


def test_compute_metrics_shape_mismatch():
    with pytest.raises(ValueError):
        compute_metrics(np.zeros((2, 2, 3), np.uint8), np.zeros((3, 3, 3), np.uint8))


# compositing


def test_composite_keeps_product_pixels():
    original = png_bytes((255, 255, 255), square=SQUARE, square_color=(180, 40, 40))
    generated = CandidateImage(b64(png_bytes((0, 90, 0), size=(128, 128))))
    result = composite_product(original, b64(mask_bytes(square=SQUARE)), generated)

    pixels = _pixels(result)
    assert pixels.shape == (64, 64, 3)
    assert tuple(pixels[32, 32]) == (180, 40, 40)
    assert tuple(pixels[16, 16]) == (180, 40, 40)
    assert np.allclose(pixels[0, 0], (0, 90, 0), atol=1)


def test_invert_mask_makes_background_editable():
    inverted = CandidateImage(invert_mask(b64(mask_bytes(square=SQUARE))))
    with Image.open(io.BytesIO(decode_base64(inverted.base64_data))) as image:
        values = np.asarray(image.convert("L"))
    assert values[32, 32] == 0
    assert values[0, 0] == 255


# transform


def test_auto_mode_resolution():
    transformer = ImageTransformer(client=None, image_model="image-model")
    assert transformer.resolve_mode(has_mask=True) == "inpaint"
    assert transformer.resolve_mode(has_mask=False) == "enhance"
    assert ImageTransformer(None, "image-model", mode="inpaint").resolve_mode(False) == "enhance"
    assert ImageTransformer(None, "image-model", mode="generate").resolve_mode(True) == "generate"


def test_inpaint_request_uses_inpaint_model_and_inverted_mask():
    transformer = ImageTransformer(None, "image-model", inpaint_model="inpaint-model")
    mask = CandidateImage(b64(mask_bytes(square=SQUARE)))
    model, body = transformer.build_request("inpaint", "studio backdrop", "SRC", mask, 2)

    assert model == "inpaint-model"
    instance = body["instances"][0]
    assert instance["image"] == {"bytesBase64Encoded": "SRC"}
    assert instance["mask"]["image"]["bytesBase64Encoded"] != mask.base64_data
    assert body["parameters"]["mode"] == "inpainting"
    assert body["parameters"]["sampleCount"] == 2


def test_generate_request_is_text_only():
    model, body = ImageTransformer(None, "image-model").build_request("generate", "a shawl", "SRC", None, 1)
    assert model == "image-model"
    assert body["instances"] == [{"prompt": "a shawl"}]


def test_transform_clamps_sample_count_and_limits_results():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        images = [png_bytes((i * 40, 0, 0)) for i in range(6)]
        return httpx.Response(200, json=predictions(*images))

    transformer = ImageTransformer(_vertex(handler), "image-model")
    candidates = asyncio.run(transformer.transform("prompt", b64(png_bytes()), sample_count=9))

    assert seen[0]["parameters"]["sampleCount"] == 4
    assert len(candidates) == 4


def test_transform_failure_raises_generation_error():
    transformer = ImageTransformer(_vertex(lambda request: httpx.Response(500, text="boom")), "image-model")
    with pytest.raises(ImageGenerationError):
        asyncio.run(transformer.transform("prompt", b64(png_bytes())))


# masking


def test_mask_producer_reads_alternative_fields():
    mask_b64 = b64(mask_bytes())
    producer = MaskProducer(
        _vertex(lambda request: httpx.Response(200, json={"predictions": [{"maskBytesBase64": mask_b64}]})),
        "seg-model",
    )
    mask = asyncio.run(producer.produce("SRC"))
    assert mask.base64_data == mask_b64


def test_mask_producer_without_mask_raises():
    producer = MaskProducer(_vertex(lambda request: httpx.Response(200, json={"predictions": [{}]})), "seg-model")
    with pytest.raises(SegmentationError):
        asyncio.run(producer.produce("SRC"))


def test_mask_producer_rejects_undecodable_mask():
    producer = MaskProducer(
        _vertex(lambda request: httpx.Response(200, json={"predictions": [{"mask": b64(b"not an image")}]})),
        "seg-model",
    )
    with pytest.raises(SegmentationError, match="not a decodable image"):
        asyncio.run(producer.produce("SRC"))


# upscale


class _FailingTokens:
    async def token(self) -> str:
        raise TokenError("Unable to obtain access token for Vertex API")


def test_upscaler_keeps_candidate_when_token_fails():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=predictions(png_bytes(size=(128, 128))))

    config = VertexConfig(project_id="p", vision_model="vision-model", image_model="image-model")
    client = VertexClient(config, _FailingTokens(), transport=httpx.MockTransport(handler))
    candidate = CandidateImage(b64(png_bytes()))

    assert asyncio.run(Upscaler(client, "sr-model").upscale(candidate)) is candidate
    assert calls == []


def test_upscaler_keeps_candidate_on_failure():
    candidate = CandidateImage(b64(png_bytes()))
    upscaler = Upscaler(_vertex(lambda request: httpx.Response(503, text="unavailable")), "sr-model")
    assert asyncio.run(upscaler.upscale(candidate)) is candidate


def test_upscaler_returns_upscaled_image():
    bigger = png_bytes(size=(128, 128))
    upscaler = Upscaler(_vertex(lambda request: httpx.Response(200, json=predictions(bigger))), "sr-model")
    result = asyncio.run(upscaler.upscale(CandidateImage(b64(png_bytes()))))
    assert decode_base64(result.base64_data) == bigger


# persistence


class _FlakyStorage:
    def __init__(self, fail_paths=()):
        self.fail_paths = set(fail_paths)
        self.paths: list[str] = []
        self._real = SupabaseStorageClient(
            StorageConfig(url=SUPABASE_URL, service_role_key="k"),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )

    async def upload(self, path, content, content_type="image/png", upsert=False):
        self.paths.append(path)
        if path in self.fail_paths:
            raise StorageUploadError(f"failed {path}")
        return await self._real.upload(path, content, content_type=content_type, upsert=upsert)


def test_object_stem():
    assert object_stem("vendor1", 1700000000000, 2) == "generated/vendor1/1700000000000_2"


def test_uploader_skips_failures_and_uploads_masks():
    storage = _FlakyStorage(fail_paths={"generated/m1/5_1.png"})
    uploader = CandidateUploader(storage, upload_masks=True, clock=lambda: 5)
    candidates = [CandidateImage(b64(png_bytes((i * 60, 0, 0)))) for i in range(3)]
    mask = CandidateImage(b64(mask_bytes()))

    refs = asyncio.run(uploader.upload_all(candidates, "m1", mask=mask))

    assert [ref.path for ref in refs] == ["generated/m1/5_0.png", "generated/m1/5_2.png"]
    assert storage.paths == [
        "generated/m1/5_0.png",
        "generated/m1/5_0_mask.png",
        "generated/m1/5_1.png",
        "generated/m1/5_2.png",
        "generated/m1/5_2_mask.png",
    ]


def test_uploader_uses_extension_for_mime():
    storage = _FlakyStorage()
    uploader = CandidateUploader(storage, clock=lambda: 1)
    refs = asyncio.run(uploader.upload_all([CandidateImage(b64(b"jpeg-ish"), mime_type="image/jpeg")], "anon"))
    assert refs[0].path == "generated/anon/1_0.jpg"
    assert refs[0].public_url.endswith("/generated-images/generated/anon/1_0.jpg")
