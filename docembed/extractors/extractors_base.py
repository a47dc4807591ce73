#!/usr/bin/env python3
"""
Base Extractor Interface

Defines the contract for all document extraction implementations.
Extractors turn a raw ``Document`` into text sections (or media payloads)
ready for chunking. Text from multi-part sources keeps its structure: one
section per PDF page, audio utterance or table row, each with its offset
into the document's joined text and its own metadata.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..documents import Document
from ..errors import ExtractionError
from ..processors.chunking_strategies import TextSection

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n"


@dataclass
class ExtractionResult:
    """Result of document extraction."""
    sections: List[TextSection] = field(default_factory=list)
    media: List[Any] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    processing_time: float = 0.0

    @classmethod
    def from_texts(cls,
                   texts: Sequence[str],
                   section_metadata: Optional[Sequence[Dict[str, Any]]] = None,
                   start_offset: int = 0,
                   **kwargs) -> "ExtractionResult":
        """
        Build sections laid out as if ``texts`` were joined with SECTION_SEPARATOR.

        ``start_offset`` is the position of the first text in the source, when
        the extractor dropped a prefix of it.
        """
        section_metadata = section_metadata or [{} for _ in texts]
        sections = []
        offset = start_offset
        for text, meta in zip(texts, section_metadata):
            sections.append(TextSection(text=text, char_offset=offset, metadata=dict(meta)))
            offset += len(text) + len(SECTION_SEPARATOR)
        return cls(sections=sections, **kwargs)

    @property
    def text(self) -> str:
        """All section texts joined in order."""
        return SECTION_SEPARATOR.join(section.text for section in self.sections)

    @property
    def is_empty(self) -> bool:
        return not self.media and not any(s.text.strip() for s in self.sections)


@dataclass
class ExtractorConfig:
    """Configuration for extractors."""
    use_gpu: bool = False
    max_file_size: int = 104_857_600
    encoding: str = "utf-8"


class ExtractorBase(ABC):
    """
    Abstract base class for all extractors.

    Subclasses implement ``_extract``; ``extract`` adds timing and turns
    unexpected library failures into ``ExtractionError``.
    """

    def __init__(self, config: Optional[ExtractorConfig] = None):
        """
        Initialize the extractor instance with the given configuration.

        If no config is provided, a default ExtractorConfig is used.
        """
        self.config = config or ExtractorConfig()

    def extract(self, document: Document) -> ExtractionResult:
        """
        Extract sections or media from a single document.

        Raises:
            ExtractionError: the input is malformed, unreadable or empty.
        """
        start = time.time()
        try:
            result = self._extract(document)
        except ExtractionError:
            raise
        except (OSError, ValueError, UnicodeDecodeError) as e:
            raise ExtractionError(document.document_id, f"{type(e).__name__}: {e}") from e

        if result.is_empty:
            raise ExtractionError(document.document_id, "no content extracted")
        result.processing_time = time.time() - start
        result.metadata.setdefault("extractor", self.__class__.__name__)
        if document.path is not None:
            result.metadata.setdefault("source_path", str(document.path))
        return result

    @abstractmethod
    def _extract(self, document: Document) -> ExtractionResult:
        """Format-specific extraction."""

    def read_bytes(self, document: Document) -> bytes:
        """Raw bytes of the document from inline content or its path."""
        if isinstance(document.content, bytes):
            return document.content
        if isinstance(document.content, str):
            return document.content.encode(self.config.encoding)
        if document.path is not None:
            self.validate_file(document)
            return document.path.read_bytes()
        raise ExtractionError(document.document_id, "document has no readable content")

    def read_text(self, document: Document) -> str:
        """Decoded text of the document from inline content or its path."""
        if isinstance(document.content, str):
            return document.content
        try:
            return self.read_bytes(document).decode(self.config.encoding)
        except UnicodeDecodeError as e:
            raise ExtractionError(document.document_id, f"not valid {self.config.encoding} text: {e}") from e

    def validate_file(self, document: Document):
        """
        Check that the document path is an existing, non-empty regular file within the size limit.

        Raises:
            ExtractionError: describing the first failed check.
        """
        path = Path(document.path)
        if not path.exists():
            raise ExtractionError(document.document_id, f"file does not exist: {path}")
        if not path.is_file():
            raise ExtractionError(document.document_id, f"path is not a file: {path}")
        size = path.stat().st_size
        if size == 0:
            raise ExtractionError(document.document_id, f"file is empty: {path}")
        if size > self.config.max_file_size:
            raise ExtractionError(document.document_id, f"file exceeds {self.config.max_file_size} bytes: {path}")

    @property
    @abstractmethod
    def supported_formats(self) -> List[str]:
        """File suffixes this extractor supports."""

    def get_extractor_info(self) -> Dict[str, Any]:
        return {
            "class": self.__class__.__name__,
            "supported_formats": self.supported_formats,
            "config": {
                "use_gpu": self.config.use_gpu,
                "max_file_size": self.config.max_file_size,
            },
        }


def document_source(document: Document) -> Union[str, Path]:
    """Human-readable origin of a document for log messages."""
    return document.path if document.path is not None else f"<inline {document.document_id}>"
