from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_CATEGORY = "Other"


@dataclass(slots=True)
class OrchestrationRequest:
    """Normalized body of a ``POST /orchestrate`` call."""

    image_url: str
    product_name: str
    maker_id: str | None = None

    @property
    def storage_namespace(self) -> str:
        return self.maker_id or "anon"


@dataclass(slots=True)
class VisionMetadata:
    """Product listing suggestions produced by the vision model."""

    product_name: str
    category: str = DEFAULT_CATEGORY
    description: str = ""
    price: float = 0.0
    stock: int = 0
    image_prompt: str = ""

    @classmethod
    def defaults_for(cls, product_name: str) -> "VisionMetadata":
        """Metadata derived solely from the caller-supplied product name."""
        return cls(product_name=product_name, image_prompt=f"{product_name} product photo")

    def as_dict(self) -> dict[str, Any]:
        return {
            "product_name": self.product_name,
            "category": self.category,
            "description": self.description,
            "price": self.price,
            "stock": self.stock,
            "image_prompt": self.image_prompt,
        }


@dataclass(slots=True)
class SourceImage:
    """Raw bytes of the vendor image and the MIME type it was served with."""

    content: bytes
    mime_type: str = "image/jpeg"


@dataclass(slots=True)
class CandidateImage:
    """A single generated image, kept as base64 payload plus MIME type."""

    base64_data: str
    mime_type: str = "image/png"

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"


@dataclass(slots=True)
class UploadedImageRef:
    """Storage location of an accepted candidate."""

    path: str
    public_url: str


@dataclass(slots=True)
class FidelityReport:
    """Similarity metrics between the original and a transformed candidate."""

    mse: float
    psnr: float
    color_delta: float
    pixels_compared: int
    accepted: bool
    reason: str | None = None

    def as_log_fields(self) -> Mapping[str, Any]:
        return {
            "mse": round(self.mse, 3),
            "psnr": "inf" if math.isinf(self.psnr) else round(self.psnr, 3),
            "color_delta": round(self.color_delta, 3),
            "pixels": self.pixels_compared,
        }


@dataclass(slots=True)
class OrchestrationResult:
    """Successful pipeline output returned to the caller."""

    metadata: VisionMetadata
    uploads: list[UploadedImageRef] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return {
            "product_name": self.metadata.product_name,
            "category": self.metadata.category,
            "description": self.metadata.description,
            "price": self.metadata.price,
            "stock": self.metadata.stock,
            "generated_images": [ref.public_url for ref in self.uploads],
        }
