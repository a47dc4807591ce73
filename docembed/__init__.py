"""
docembed

Turns heterogeneous documents (plain text, Markdown, PDF, DOCX, HTML,
images, audio and tabular rows) into dense vector embeddings for
retrieval.
"""

from .documents import Batch, Document, EmbeddingRecord, Modality, Segment, SegmentFailure
from .errors import (
    AssemblyError,
    BackendError,
    BatchSizeExceededError,
    ChunkError,
    DimensionMismatchError,
    DispatchError,
    DocEmbedError,
    EmptyInputError,
    ExtractionError,
    InferenceFailedError,
    ModelLoadFailedError,
    TokenizerUnavailableError,
    UnsupportedFormatError,
)
from .framework.config import Config, ConfigManager
from .workflows import EmbeddingWorkflow, InMemorySink, JsonlSink, RunManifest

__version__ = "0.1.0"

__all__ = [
    'Batch',
    'Document',
    'EmbeddingRecord',
    'Modality',
    'Segment',
    'SegmentFailure',
    'AssemblyError',
    'BackendError',
    'BatchSizeExceededError',
    'ChunkError',
    'DimensionMismatchError',
    'DispatchError',
    'DocEmbedError',
    'EmptyInputError',
    'ExtractionError',
    'InferenceFailedError',
    'ModelLoadFailedError',
    'TokenizerUnavailableError',
    'UnsupportedFormatError',
    'Config',
    'ConfigManager',
    'EmbeddingWorkflow',
    'InMemorySink',
    'JsonlSink',
    'RunManifest',
]
