"""
GI Connect listing worker: vision metadata, listing images and storage upload.
"""
from .config import load_config
from .pipeline import ListingPipeline
from .server import WorkerContext, create_app

__all__ = ["load_config", "ListingPipeline", "WorkerContext", "create_app"]
