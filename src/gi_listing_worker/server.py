"""HTTP surface of the listing worker.

Routes:
- ``GET /``: liveness text.
- ``POST /orchestrate``: run the listing pipeline for one vendor image.

All collaborators are carried by an explicit :class:`WorkerContext` so tests
can hand the app fakes instead of live clients.
"""
from __future__ import annotations

import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .clients import GoogleTokenProvider, SourceImageFetcher, StaticTokenProvider, SupabaseStorageClient, VertexClient
from .config import WorkerConfig, load_config
from .errors import (
    InvalidMakerIdError,
    InvalidRequestError,
    NotReadyError,
    OrchestrationFailed,
    UnauthorizedError,
    WorkerError,
)
from .logging_setup import install_exception_hooks
from .pipeline import ListingPipeline
from .stages import CandidateUploader, FidelityGate, ImageTransformer, MaskProducer, MetadataExtractor, Upscaler
from .types import OrchestrationRequest

logger = logging.getLogger(__name__)

LIVENESS_TEXT = "vendor-ai-worker is running"
SECRET_HEADER = "x-worker-secret"


@dataclass
class WorkerContext:
    """Configuration plus the pipeline and the clients it owns."""

    config: WorkerConfig
    pipeline: ListingPipeline | None = None
    resources: list[Any] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.config.ready and self.pipeline is not None

    async def aclose(self) -> None:
        for resource in self.resources:
            try:
                await resource.aclose()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to close %s", type(resource).__name__)
        self.resources.clear()


def build_context(config: WorkerConfig) -> WorkerContext:
    """Wire live clients and stages from ``config``; a not-ready config gets no pipeline."""
    if not config.ready or config.vertex is None or config.storage is None:
        logger.warning("Worker is not ready; missing settings: %s", ", ".join(config.missing) or "none")
        return WorkerContext(config=config)

    vertex_cfg = config.vertex
    tokens = StaticTokenProvider(vertex_cfg.access_token) if vertex_cfg.access_token else GoogleTokenProvider()
    vertex = VertexClient(vertex_cfg, tokens)
    fetcher = SourceImageFetcher(vertex_cfg.timeout_seconds, vertex_cfg.max_attempts)
    storage = SupabaseStorageClient(config.storage, vertex_cfg.timeout_seconds)

    pipeline = ListingPipeline(
        fetcher=fetcher,
        extractor=MetadataExtractor(vertex, vertex_cfg.vision_model),
        transformer=ImageTransformer(
            vertex,
            vertex_cfg.image_model,
            inpaint_model=vertex_cfg.inpaint_model,
            mode=config.pipeline.transform_mode,
            scan_raw=config.pipeline.scan_raw_base64,
        ),
        uploader=CandidateUploader(storage, upload_masks=config.pipeline.upload_masks),
        gate=FidelityGate(config.fidelity),
        mask_producer=MaskProducer(vertex, vertex_cfg.segmentation_model) if vertex_cfg.segmentation_model else None,
        upscaler=Upscaler(vertex, vertex_cfg.sr_model) if vertex_cfg.sr_model else None,
        config=config.pipeline,
    )
    return WorkerContext(config=config, pipeline=pipeline, resources=[vertex, fetcher, storage])


def _log_readiness(config: WorkerConfig) -> None:
    vertex = config.vertex
    logger.info("Shared secret configured: %s", bool(config.worker_secret))
    logger.info("Storage configured: %s", config.storage is not None)
    logger.info("Vertex configured: %s", vertex is not None)
    if vertex is not None:
        logger.info(
            "Models: vision=%s image=%s segmentation=%s inpaint=%s sr=%s",
            vertex.vision_model,
            vertex.image_model,
            vertex.segmentation_model or "-",
            vertex.inpaint_model or "-",
            vertex.sr_model or "-",
        )
    logger.info(
        "Pipeline: max_images=%d vision_policy=%s mode=%s fidelity=%s",
        config.pipeline.max_images,
        config.pipeline.vision_failure_policy,
        config.pipeline.transform_mode,
        "on" if config.fidelity.enabled else "off",
    )


def authorize(config: WorkerConfig, presented: str | None) -> None:
    expected = config.worker_secret
    if not expected or not presented:
        raise UnauthorizedError()
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedError()


def is_safe_namespace(maker_id: str) -> bool:
    """A storage namespace must be one path segment: no separators, no dot segments, no control characters."""
    if maker_id in {".", ".."} or "/" in maker_id or "\\" in maker_id:
        return False
    return maker_id.isprintable()


def parse_request(body: Any) -> OrchestrationRequest:
    if not isinstance(body, dict):
        raise InvalidRequestError()
    image_url = body.get("image_url")
    product_name = body.get("product_name")
    if not isinstance(image_url, str) or not image_url.strip():
        raise InvalidRequestError()
    if not isinstance(product_name, str) or not product_name.strip():
        raise InvalidRequestError()
    maker_id = body.get("maker_id")
    if maker_id is not None and not isinstance(maker_id, str):
        maker_id = str(maker_id)
    if maker_id and not is_safe_namespace(maker_id):
        raise InvalidMakerIdError()
    return OrchestrationRequest(
        image_url=image_url.strip(),
        product_name=product_name.strip(),
        maker_id=maker_id or None,
    )


def _error_response(exc: WorkerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app(context: WorkerContext | None = None, config: WorkerConfig | None = None) -> FastAPI:
    """Create the FastAPI application; ``context`` defaults to live clients built from ``config``."""
    if context is None:
        context = build_context(config or load_config())
    worker_config = context.config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        install_exception_hooks(asyncio.get_running_loop())
        _log_readiness(worker_config)
        logger.info("Worker ready: %s", context.ready)
        try:
            yield
        finally:
            await context.aclose()
            logger.info("Worker shut down")

    app = FastAPI(
        title="GI Connect listing worker",
        description="Vision metadata, image transformation and upload for vendor product photos",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[worker_config.server.cors_origin],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # noqa: ANN001, ANN202
        started = time.perf_counter()
        response = await call_next(request)
        client = request.client.host if request.client else "-"
        logger.info(
            "%s %s from %s -> %d (%.0f ms)",
            request.method,
            request.url.path,
            client,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.get("/", response_class=PlainTextResponse)
    async def liveness() -> str:
        return LIVENESS_TEXT

    @app.post("/orchestrate")
    async def orchestrate(request: Request) -> JSONResponse:
        try:
            authorize(worker_config, request.headers.get(SECRET_HEADER))
            if not context.ready or context.pipeline is None:
                raise NotReadyError()
            try:
                body = await request.json()
            except ValueError as exc:
                raise InvalidRequestError() from exc
            orchestration = parse_request(body)
            result = await context.pipeline.run(orchestration)
        except WorkerError as exc:
            if exc.status_code >= 500:
                logger.error("Orchestration failed with %s: %s", exc.code, exc.details or exc.code)
            else:
                logger.warning("Rejected request: %s", exc.code)
            return _error_response(exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected orchestration error")
            return _error_response(OrchestrationFailed(str(exc) or type(exc).__name__))
        return JSONResponse(status_code=200, content=result.to_response())

    return app
