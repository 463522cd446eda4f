"""
Client adapters for Vertex AI, the source image host, and Supabase Storage.
"""
from .auth import GoogleTokenProvider, StaticTokenProvider
from .source import SourceImageFetcher
from .storage import SupabaseStorageClient
from .vertex import VertexClient

__all__ = [
    "GoogleTokenProvider",
    "StaticTokenProvider",
    "SourceImageFetcher",
    "SupabaseStorageClient",
    "VertexClient",
]
