from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

MAX_SAMPLE_COUNT = 4


class ServerConfig(BaseModel):
    """HTTP listener settings."""

    host: str = Field(default="0.0.0.0", description="Interface the worker binds to")
    port: int = Field(default=8080, ge=1, le=65535, description="Port the worker listens on")
    cors_origin: str = Field(default="*", description="Allowed CORS origin for browser callers")
    log_level: str = Field(default="INFO", description="Root log level")


class StorageConfig(BaseModel):
    """Settings required to upload generated images to the storage bucket."""

    url: str = Field(..., description="Supabase project URL")
    service_role_key: str = Field(..., description="Service role key with write access to the bucket")
    bucket: str = Field(default="generated-images", description="Bucket receiving generated images")


class VertexConfig(BaseModel):
    """Settings required to call the Vertex AI REST endpoints."""

    project_id: str = Field(..., description="Google Cloud project hosting the models")
    location: str = Field(default="us-central1", description="Vertex AI region")
    vision_model: str = Field(..., description="Multimodal model used for metadata extraction")
    image_model: str = Field(..., description="Image generation / enhancement model")
    segmentation_model: str | None = Field(
        default=None,
        description="Optional segmentation model producing a foreground mask",
    )
    inpaint_model: str | None = Field(
        default=None,
        description="Optional inpainting model; falls back to image_model when a mask is present",
    )
    sr_model: str | None = Field(default=None, description="Optional super-resolution model")
    access_token: str | None = Field(
        default=None,
        description="Pre-issued bearer token; Application Default Credentials are used when unset",
    )
    timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        le=900.0,
        description="Per-call timeout applied to every outbound request",
    )
    max_attempts: int = Field(
        default=1,
        ge=1,
        le=5,
        description="Attempts per outbound call; 1 disables retries",
    )

    @property
    def region_base(self) -> str:
        return f"https://{self.location}-aiplatform.googleapis.com/v1"


class FidelityConfig(BaseModel):
    """Thresholds deciding whether a transformed image still shows the same product."""

    enabled: bool = Field(default=True, description="Apply the fidelity gate to candidates")
    min_psnr: float = Field(default=30.0, description="Minimum PSNR in dB; higher is stricter")
    max_mse: float = Field(default=200.0, ge=0.0, description="Maximum mean squared error; lower is stricter")
    max_color_delta: float = Field(
        default=6.0, ge=0.0, description="Maximum mean absolute intensity difference"
    )
    sample_width: int = Field(
        default=512, ge=16, le=4096, description="Width both images are resized to before comparison"
    )


class PipelineConfig(BaseModel):
    """Per-request orchestration behaviour."""

    max_images: int = Field(default=MAX_SAMPLE_COUNT, ge=1, le=MAX_SAMPLE_COUNT)
    vision_failure_policy: Literal["fallback", "strict"] = Field(
        default="fallback",
        description="'fallback' substitutes default metadata, 'strict' fails the request",
    )
    transform_mode: Literal["auto", "inpaint", "enhance", "generate"] = Field(
        default="auto",
        description="Which image endpoint to call; 'auto' picks inpaint when a mask exists",
    )
    composite_product: bool = Field(
        default=True,
        description="Paste original product pixels back over generated backgrounds when masked",
    )
    upload_masks: bool = Field(default=False, description="Store the mask next to each accepted image")
    scan_raw_base64: bool = Field(
        default=True,
        description="Scan unrecognised prediction payloads for long base64 runs",
    )


class WorkerConfig(BaseModel):
    """Top-level configuration consumed by the worker."""

    worker_secret: str | None = None
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig | None = None
    vertex: VertexConfig | None = None
    fidelity: FidelityConfig = Field(default_factory=FidelityConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    missing: list[str] = Field(
        default_factory=list,
        description="Required settings that were absent when the configuration was loaded",
    )

    @property
    def ready(self) -> bool:
        return (
            not self.missing
            and bool(self.worker_secret)
            and self.storage is not None
            and self.vertex is not None
        )


def clamp_sample_count(value: int) -> int:
    return max(1, min(MAX_SAMPLE_COUNT, value))


def _bool_from_env(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _float_from_env(value: Optional[str], default: float) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value: {value}") from exc


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value: {value}") from exc


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def load_config(dotenv_path: str | Path | None = None) -> WorkerConfig:
    """
    Load configuration from environment variables (optionally seeded by a .env file).

    Missing storage or Vertex settings do not raise: the affected section is left
    empty and the variable names are recorded in ``WorkerConfig.missing`` so the
    worker can keep listening in a not-ready state.

    Raises
    ------
    RuntimeError
        If a value is present but malformed (e.g. a non-numeric threshold).
    """
    env_path = Path(dotenv_path) if dotenv_path else Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    missing: list[str] = []

    worker_secret = os.getenv("WORKER_SHARED_SECRET") or None
    if not worker_secret:
        missing.append("WORKER_SHARED_SECRET")

    storage_data: dict[str, object] | None = {
        "url": os.getenv("SUPABASE_URL"),
        "service_role_key": os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
        "bucket": os.getenv("SUPABASE_BUCKET") or "generated-images",
    }
    for key, env_name in (("url", "SUPABASE_URL"), ("service_role_key", "SUPABASE_SERVICE_ROLE_KEY")):
        if not storage_data[key]:
            missing.append(env_name)
    if any(name.startswith("SUPABASE_") for name in missing):
        storage_data = None

    vertex_data: dict[str, object] | None = {
        "project_id": _first_env("VERTEX_PROJECT_ID", "GCP_PROJECT", "GCP_PROJECT_ID"),
        "location": os.getenv("VERTEX_LOCATION") or "us-central1",
        "vision_model": os.getenv("VISION_MODEL_NAME"),
        "image_model": _first_env("IMAGE_MODEL_NAME", "IMAGE_MODEL"),
        "segmentation_model": _first_env("SEGMENTATION_MODEL_NAME", "SEGMENT_MODEL_NAME"),
        "inpaint_model": os.getenv("INPAINT_MODEL_NAME") or None,
        "sr_model": os.getenv("SR_MODEL_NAME") or None,
        "access_token": os.getenv("VERTEX_ACCESS_TOKEN") or None,
        "timeout_seconds": _float_from_env(os.getenv("UPSTREAM_TIMEOUT_SECONDS"), 120.0),
        "max_attempts": _int_from_env(os.getenv("UPSTREAM_MAX_ATTEMPTS"), 1),
    }
    vertex_missing = [
        env_name
        for key, env_name in (
            ("project_id", "VERTEX_PROJECT_ID"),
            ("vision_model", "VISION_MODEL_NAME"),
            ("image_model", "IMAGE_MODEL_NAME"),
        )
        if not vertex_data[key]
    ]
    if vertex_missing:
        missing.extend(vertex_missing)
        vertex_data = None

    data = {
        "worker_secret": worker_secret,
        "server": {
            "host": os.getenv("HOST", "0.0.0.0"),
            "port": _int_from_env(os.getenv("PORT"), 8080),
            "cors_origin": os.getenv("CORS_ORIGIN", "*"),
            "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
        },
        "storage": storage_data,
        "vertex": vertex_data,
        "fidelity": {
            "enabled": _bool_from_env(os.getenv("FIDELITY_ENABLED"), True),
            "min_psnr": _float_from_env(os.getenv("MIN_PSNR"), 30.0),
            "max_mse": _float_from_env(os.getenv("MAX_MSE"), 200.0),
            "max_color_delta": _float_from_env(os.getenv("MAX_COLOR_DELTA"), 6.0),
            "sample_width": _int_from_env(os.getenv("FIDELITY_SAMPLE_WIDTH"), 512),
        },
        "pipeline": {
            "max_images": clamp_sample_count(
                _int_from_env(os.getenv("MAX_GENERATED_IMAGES"), MAX_SAMPLE_COUNT)
            ),
            "vision_failure_policy": (os.getenv("VISION_FAILURE_POLICY") or "fallback").strip().lower(),
            "transform_mode": (os.getenv("TRANSFORM_MODE") or "auto").strip().lower(),
            "composite_product": _bool_from_env(os.getenv("COMPOSITE_PRODUCT"), True),
            "upload_masks": _bool_from_env(os.getenv("UPLOAD_MASKS"), False),
            "scan_raw_base64": _bool_from_env(os.getenv("SCAN_RAW_BASE64"), True),
        },
        "missing": missing,
    }

    try:
        return WorkerConfig.model_validate(data)
    except ValidationError as exc:
        invalid = {"/".join(str(part) for part in err["loc"]) for err in exc.errors()}
        invalid_str = ", ".join(sorted(invalid))
        raise RuntimeError(f"Invalid configuration values: {invalid_str}") from exc
