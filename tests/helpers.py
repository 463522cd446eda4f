from __future__ import annotations

import base64
import io
import json
from dataclasses import dataclass, field
from typing import Callable

import httpx
from PIL import Image, ImageDraw

from gi_listing_worker.clients import SourceImageFetcher, StaticTokenProvider, SupabaseStorageClient, VertexClient
from gi_listing_worker.config import FidelityConfig, PipelineConfig, StorageConfig, VertexConfig, WorkerConfig
from gi_listing_worker.pipeline import ListingPipeline
from gi_listing_worker.server import WorkerContext
from gi_listing_worker.stages import (
    CandidateUploader,
    FidelityGate,
    ImageTransformer,
    MaskProducer,
    MetadataExtractor,
    Upscaler,
)

SECRET = "s3cret-value"
SUPABASE_URL = "https://proj.supabase.co"
PUBLIC_PREFIX = f"{SUPABASE_URL}/storage/v1/object/public/generated-images/"

Handler = Callable[[httpx.Request], httpx.Response]


def png_bytes(color=(200, 30, 30), size=(64, 64), square=None, square_color=(20, 20, 200)) -> bytes:
    image = Image.new("RGB", size, color)
    if square is not None:
        ImageDraw.Draw(image).rectangle(square, fill=square_color)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def mask_bytes(size=(64, 64), square=(16, 16, 47, 47)) -> bytes:
    image = Image.new("L", size, 0)
    if square is not None:
        ImageDraw.Draw(image).rectangle(square, fill=255)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def b64(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def vision_response(payload) -> dict:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def predictions(*images: bytes) -> dict:
    return {"predictions": [{"bytesBase64Encoded": b64(img), "mimeType": "image/png"} for img in images]}


def make_config(
    *,
    segmentation_model: str | None = None,
    sr_model: str | None = None,
    fidelity: FidelityConfig | None = None,
    **pipeline_overrides,
) -> WorkerConfig:
    return WorkerConfig(
        worker_secret=SECRET,
        storage=StorageConfig(url=SUPABASE_URL, service_role_key="service-key"),
        vertex=VertexConfig(
            project_id="test-project",
            vision_model="vision-model",
            image_model="image-model",
            segmentation_model=segmentation_model,
            sr_model=sr_model,
            access_token="test-token",
        ),
        fidelity=fidelity or FidelityConfig(enabled=False),
        pipeline=PipelineConfig(**pipeline_overrides),
    )


@dataclass
class Upstreams:
    """Routes mocked outbound HTTP by URL fragment and records every call."""

    routes: dict[str, Handler] = field(default_factory=dict)
    calls: list[httpx.Request] = field(default_factory=list)

    def transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            self.calls.append(request)
            url = str(request.url)
            for marker, responder in self.routes.items():
                if marker in url:
                    return responder(request)
            return httpx.Response(404, json={"error": f"no mock route for {url}"})

        return httpx.MockTransport(handler)

    def calls_to(self, marker: str) -> list[httpx.Request]:
        return [call for call in self.calls if marker in str(call.url)]


def default_upstreams(
    *,
    vision: dict | None = None,
    images: tuple[bytes, ...] = (),
    source: bytes | None = None,
) -> Upstreams:
    source_content = source if source is not None else png_bytes()
    upstreams = Upstreams()
    upstreams.routes["https://x/"] = lambda request: httpx.Response(
        200, content=source_content, headers={"content-type": "image/jpeg"}
    )
    upstreams.routes["vision-model:generateContent"] = lambda request: httpx.Response(
        200, json=vision or vision_response({})
    )
    upstreams.routes["image-model:predict"] = lambda request: httpx.Response(200, json=predictions(*images))
    upstreams.routes["/storage/v1/object/"] = lambda request: httpx.Response(
        200, json={"Key": request.url.path}
    )
    return upstreams


def build_pipeline(config: WorkerConfig, upstreams: Upstreams) -> tuple[ListingPipeline, list]:
    transport = upstreams.transport()
    vertex_cfg = config.vertex
    vertex = VertexClient(vertex_cfg, StaticTokenProvider("test-token"), transport=transport)
    fetcher = SourceImageFetcher(transport=transport)
    storage = SupabaseStorageClient(config.storage, transport=transport)
    pipeline = ListingPipeline(
        fetcher=fetcher,
        extractor=MetadataExtractor(vertex, vertex_cfg.vision_model),
        transformer=ImageTransformer(
            vertex,
            vertex_cfg.image_model,
            mode=config.pipeline.transform_mode,
            scan_raw=config.pipeline.scan_raw_base64,
        ),
        uploader=CandidateUploader(storage, upload_masks=config.pipeline.upload_masks, clock=lambda: 1700000000000),
        gate=FidelityGate(config.fidelity),
        mask_producer=MaskProducer(vertex, vertex_cfg.segmentation_model) if vertex_cfg.segmentation_model else None,
        upscaler=Upscaler(vertex, vertex_cfg.sr_model) if vertex_cfg.sr_model else None,
        config=config.pipeline,
    )
    return pipeline, [vertex, fetcher, storage]


def build_context(config: WorkerConfig, upstreams: Upstreams) -> WorkerContext:
    pipeline, resources = build_pipeline(config, upstreams)
    return WorkerContext(config=config, pipeline=pipeline, resources=resources)
