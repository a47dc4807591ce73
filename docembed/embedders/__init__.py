"""
Embedders Module

Embedding backends that turn batches of segments into dense vectors.
Concrete backends are imported lazily by the factory, so torch-free
callers can still use the base contract.
"""

from .embedders_base import (
    EmbeddingBackend,
    EmbeddingConfig,
    IMAGE_MODALITIES,
    TEXT_MODALITIES,
    l2_normalize,
    pad_token_batch,
)
from .embedders_factory import EmbedderFactory

__all__ = [
    'EmbeddingBackend',
    'EmbeddingConfig',
    'EmbedderFactory',
    'IMAGE_MODALITIES',
    'TEXT_MODALITIES',
    'l2_normalize',
    'pad_token_batch',
    'create_embedder',
]


def create_embedder(model_config, **kwargs) -> EmbeddingBackend:
    """Create a backend for a ModelConfig."""
    return EmbedderFactory.create(model_config, **kwargs)
