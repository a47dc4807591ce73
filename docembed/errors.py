#!/usr/bin/env python3
"""
Error Taxonomy
==============

Exceptions raised at the component seams of the embedding pipeline.

Chunking, backend and dispatch errors are raised by their components and
converted into per-document or per-segment failures by the scheduler and
workflow. Only ``ModelLoadFailedError`` and ``AssemblyError`` abort a run.
"""

from typing import Optional


class DocEmbedError(Exception):
    """Root of every error raised by docembed."""


# Chunking

class ChunkError(DocEmbedError):
    """Raised when text cannot be split into segments."""


class EmptyInputError(ChunkError):
    """Raised for zero-length input text."""

    def __init__(self, document_id: Optional[str] = None):
        self.document_id = document_id
        target = f" for document {document_id}" if document_id else ""
        super().__init__(f"Cannot chunk empty text{target}")


class TokenizerUnavailableError(ChunkError):
    """Raised when the tokenizer for a model vocabulary cannot be initialized."""

    def __init__(self, model_identifier: str, cause: Optional[BaseException] = None):
        self.model_identifier = model_identifier
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Tokenizer unavailable for '{model_identifier}'{detail}")


# Backend

class BackendError(DocEmbedError):
    """Raised by embedding backends."""


class DimensionMismatchError(BackendError):
    """
    Raised when input or output tensor shapes violate the backend contract.

    Inputs longer than the model context should never reach a backend, so this
    signals an internal invariant violation rather than bad user input.
    """

    def __init__(self, message: str, expected: Optional[int] = None, actual: Optional[int] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class ModelLoadFailedError(BackendError):
    """Raised when model weights or the runtime session cannot be loaded. Run-fatal."""

    def __init__(self, model_identifier: str, cause: Optional[BaseException] = None):
        self.model_identifier = model_identifier
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to load model '{model_identifier}'{detail}")


class InferenceFailedError(BackendError):
    """Raised when a forward pass fails. ``transient`` failures are retried."""

    def __init__(self, reason: str, transient: bool = False):
        self.reason = reason
        self.transient = transient
        super().__init__(f"Inference failed: {reason}")


class BatchSizeExceededError(BackendError):
    """Raised when a batch is larger than the backend's configured maximum."""

    def __init__(self, size: int, maximum: int):
        self.size = size
        self.maximum = maximum
        super().__init__(f"Batch of {size} segments exceeds max_batch_size={maximum}")


# Dispatch

class DispatchError(DocEmbedError):
    """Raised when a document cannot be routed to an adapter."""


class UnsupportedFormatError(DispatchError):
    """Raised for document types with no registered adapter."""

    def __init__(self, document_id: str, detected: Optional[str] = None):
        self.document_id = document_id
        self.detected = detected
        detail = f" '{detected}'" if detected else ""
        super().__init__(f"Unsupported format{detail} for document {document_id}")


# Extraction and assembly

class ExtractionError(DocEmbedError):
    """Raised by extractors for malformed or unreadable inputs."""

    def __init__(self, document_id: str, message: str):
        self.document_id = document_id
        super().__init__(f"Extraction failed for {document_id}: {message}")


class AssemblyError(DocEmbedError):
    """Raised when a segment would be emitted twice or never, or the sink rejects output. Fatal."""
