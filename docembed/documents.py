#!/usr/bin/env python3
"""
Pipeline Data Model
===================

Value types that flow through the pipeline:

    Document -> Segment -> Batch -> EmbeddingRecord / SegmentFailure

Segments carry the character offsets of their text within the document's
extracted text, so records can always be traced back to their source span.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import numpy as np


class Modality(str, Enum):
    """Input modality of a document or segment."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    STRUCTURED = "structured"


DocumentContent = Union[str, bytes, Mapping[str, Any]]


@dataclass(frozen=True)
class Document:
    """
    A raw input unit.

    Either ``content`` (inline text, bytes or a tabular row mapping) or
    ``path`` (a file handle) must be provided. ``format`` is an optional
    declared sub-format such as ``"markdown"`` or ``"pdf"``; when absent the
    format is detected from the path suffix.
    """
    document_id: str
    modality: Modality = Modality.TEXT
    content: Optional[DocumentContent] = None
    path: Optional[Path] = None
    format: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.content is None and self.path is None:
            raise ValueError(f"Document {self.document_id} has neither content nor path")
        if self.path is not None and not isinstance(self.path, Path):
            object.__setattr__(self, "path", Path(self.path))


@dataclass(frozen=True)
class Segment:
    """
    A contiguous unit of embeddable content.

    Textual segments carry ``text`` and ``token_count``; media segments carry
    ``payload`` (for example a PIL image) and no token count.
    """
    document_id: str
    ordinal: int
    modality: Modality
    text: Optional[str] = None
    payload: Any = None
    token_count: Optional[int] = None
    start_char: int = 0
    end_char: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, int]:
        """Identity of the segment within a run."""
        return (self.document_id, self.ordinal)

    @property
    def is_textual(self) -> bool:
        return self.text is not None


@dataclass(frozen=True)
class Batch:
    """Ordered group of segments sent to one backend in a single call."""
    batch_id: int
    backend_key: str
    segments: Tuple[Segment, ...]

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def modality(self) -> Modality:
        return self.segments[0].modality

    @property
    def document_ids(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(s.document_id for s in self.segments))


@dataclass
class EmbeddingRecord:
    """Final output unit handed to the consumer sink."""
    document_id: str
    ordinal: int
    vector: np.ndarray
    modality: Modality
    model_name: str = ""
    text: Optional[str] = None
    start_char: int = 0
    end_char: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_segment(cls, segment: Segment, vector: np.ndarray, model_name: str = "") -> "EmbeddingRecord":
        return cls(
            document_id=segment.document_id,
            ordinal=segment.ordinal,
            vector=vector,
            modality=segment.modality,
            model_name=model_name,
            text=segment.text,
            start_char=segment.start_char,
            end_char=segment.end_char,
            metadata=dict(segment.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form used by file sinks."""
        return {
            "document_id": self.document_id,
            "ordinal": self.ordinal,
            "modality": self.modality.value,
            "model_name": self.model_name,
            "text": self.text,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "metadata": self.metadata,
            "dimension": int(self.vector.shape[0]),
            "vector": self.vector.tolist(),
        }


@dataclass(frozen=True)
class SegmentFailure:
    """
    Failure notification for one segment, or for a whole document when
    ``ordinal`` is None (the document failed before producing segments).
    """
    document_id: str
    ordinal: Optional[int]
    reason: str
