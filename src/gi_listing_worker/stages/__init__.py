"""
Pipeline stages, one per external collaborator.
"""
from .fidelity import FidelityGate
from .masking import MaskProducer
from .metadata import MetadataExtractor
from .persistence import CandidateUploader
from .transform import ImageTransformer
from .upscale import Upscaler

__all__ = [
    "CandidateUploader",
    "FidelityGate",
    "ImageTransformer",
    "MaskProducer",
    "MetadataExtractor",
    "Upscaler",
]
