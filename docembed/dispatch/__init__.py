"""Routing of documents to their extraction, chunking and embedding pipeline."""

from .adapters import (  # noqa: F401
    IMAGE_BACKEND,
    TEXT_BACKEND,
    Adapter,
    AdapterDispatch,
    ChunkingConfig,
    DocumentFormat,
    build_default_dispatch,
)

__all__ = [
    "IMAGE_BACKEND",
    "TEXT_BACKEND",
    "Adapter",
    "AdapterDispatch",
    "ChunkingConfig",
    "DocumentFormat",
    "build_default_dispatch",
]
