#!/usr/bin/env python3
"""
Adapter Dispatch

Routes each document to the (extractor, chunking configuration, backend)
triple registered for its format. Formats come from the document's declared
format, then its path suffix, then its content and modality. A document
whose format cannot be determined, or has no registered adapter, is
rejected with ``UnsupportedFormatError``; there is no fallback adapter.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..documents import Document, Modality
from ..errors import UnsupportedFormatError
from ..extractors import (
    AudioTranscriptExtractor,
    DoclingExtractor,
    ExtractorBase,
    HTMLExtractor,
    ImageExtractor,
    MarkdownExtractor,
    PlainTextExtractor,
    TabularRowExtractor,
)

logger = logging.getLogger(__name__)

TEXT_BACKEND = "text"
IMAGE_BACKEND = "image"


class DocumentFormat(str, Enum):
    PLAIN_TEXT = "plain_text"
    MARKDOWN = "markdown"
    PDF = "pdf"
    DOCX = "docx"
    HTML = "html"
    IMAGE = "image"
    AUDIO = "audio"
    TABULAR_ROW = "tabular_row"

    @property
    def modality(self) -> Modality:
        return _FORMAT_MODALITY.get(self, Modality.TEXT)


_FORMAT_MODALITY = {
    DocumentFormat.IMAGE: Modality.IMAGE,
    DocumentFormat.AUDIO: Modality.AUDIO,
    DocumentFormat.TABULAR_ROW: Modality.STRUCTURED,
}

# Declared format names, case-insensitive
_FORMAT_ALIASES: Dict[str, DocumentFormat] = {
    **{f.value: f for f in DocumentFormat},
    "text": DocumentFormat.PLAIN_TEXT,
    "txt": DocumentFormat.PLAIN_TEXT,
    "md": DocumentFormat.MARKDOWN,
    "htm": DocumentFormat.HTML,
    "csv": DocumentFormat.TABULAR_ROW,
    "row": DocumentFormat.TABULAR_ROW,
}

_SUFFIX_FORMATS: Dict[str, DocumentFormat] = {
    '.txt': DocumentFormat.PLAIN_TEXT,
    '.text': DocumentFormat.PLAIN_TEXT,
    '.md': DocumentFormat.MARKDOWN,
    '.markdown': DocumentFormat.MARKDOWN,
    '.pdf': DocumentFormat.PDF,
    '.docx': DocumentFormat.DOCX,
    '.html': DocumentFormat.HTML,
    '.htm': DocumentFormat.HTML,
    '.csv': DocumentFormat.TABULAR_ROW,
    **{suffix: DocumentFormat.IMAGE for suffix in ImageExtractor().supported_formats},
    **{suffix: DocumentFormat.AUDIO for suffix in AudioTranscriptExtractor().supported_formats},
}


@dataclass(frozen=True)
class ChunkingConfig:
    """How the text of one format is chunked."""
    max_tokens: int
    overlap: int = 0
    strategy: str = "semantic"


@dataclass(frozen=True)
class Adapter:
    """
    Pipeline for one document format.

    ``chunking`` is None for media formats, which produce one segment per
    extracted payload.
    """
    format: DocumentFormat
    extractor: ExtractorBase
    chunking: Optional[ChunkingConfig]
    backend_key: str


class AdapterDispatch:
    """Registry of adapters keyed by document format."""

    def __init__(self):
        self._adapters: Dict[DocumentFormat, Adapter] = {}

    def register(self, adapter: Adapter):
        self._adapters[adapter.format] = adapter
        logger.info(f"Registered adapter: {adapter.format.value} -> {adapter.extractor.__class__.__name__} "
                    f"[{adapter.backend_key}]")

    @property
    def formats(self) -> List[DocumentFormat]:
        return list(self._adapters)

    @property
    def backend_keys(self) -> List[str]:
        return sorted({adapter.backend_key for adapter in self._adapters.values()})

    def describe(self) -> Dict[str, Dict[str, Any]]:
        """Registered adapters by format value, for run manifests."""
        return {
            fmt.value: {
                "extractor": adapter.extractor.get_extractor_info(),
                "chunking": asdict(adapter.chunking) if adapter.chunking else None,
                "backend_key": adapter.backend_key,
            }
            for fmt, adapter in self._adapters.items()
        }

    def detect_format(self, document: Document) -> DocumentFormat:
        """
        Determine the format of a document.

        Raises:
            UnsupportedFormatError: unknown declared format or suffix, or a
                format whose modality disagrees with the document's.
        """
        detected: Optional[DocumentFormat] = None

        if document.format:
            detected = _FORMAT_ALIASES.get(document.format.lower().lstrip("."))
            if detected is None:
                raise UnsupportedFormatError(document.document_id, document.format)
        elif document.path is not None and document.path.suffix:
            suffix = document.path.suffix.lower()
            detected = _SUFFIX_FORMATS.get(suffix)
            if detected is None:
                raise UnsupportedFormatError(document.document_id, suffix)
        elif document.modality is Modality.IMAGE:
            detected = DocumentFormat.IMAGE
        elif document.modality is Modality.AUDIO:
            detected = DocumentFormat.AUDIO
        elif document.modality is Modality.STRUCTURED or isinstance(document.content, Mapping):
            detected = DocumentFormat.TABULAR_ROW
        elif isinstance(document.content, str):
            detected = DocumentFormat.PLAIN_TEXT

        if detected is None:
            raise UnsupportedFormatError(document.document_id)
        if detected.modality is not document.modality:
            raise UnsupportedFormatError(
                document.document_id,
                f"{detected.value} (document modality is {document.modality.value})",
            )
        return detected

    def route(self, document: Document) -> Adapter:
        """
        Return the adapter for a document.

        Raises:
            UnsupportedFormatError: no adapter is registered for the detected format.
        """
        detected = self.detect_format(document)
        adapter = self._adapters.get(detected)
        if adapter is None:
            raise UnsupportedFormatError(document.document_id, f"{detected.value} (no adapter registered)")
        return adapter


def build_default_dispatch(config) -> AdapterDispatch:
    """
    Register the standard adapters for a ``docembed.framework.config.Config``.

    Image documents are only routed when ``config.image_model`` is set.
    """
    model = config.text_model
    prose = ChunkingConfig(max_tokens=model.max_tokens, overlap=model.overlap, strategy="semantic")
    markdown = ChunkingConfig(max_tokens=model.max_tokens, overlap=model.overlap, strategy="markdown")
    rows = ChunkingConfig(max_tokens=model.max_tokens, overlap=0, strategy="semantic")

    docling = DoclingExtractor()
    dispatch = AdapterDispatch()
    dispatch.register(Adapter(DocumentFormat.PLAIN_TEXT, PlainTextExtractor(), prose, TEXT_BACKEND))
    dispatch.register(Adapter(DocumentFormat.MARKDOWN, MarkdownExtractor(), markdown, TEXT_BACKEND))
    dispatch.register(Adapter(DocumentFormat.HTML, HTMLExtractor(), prose, TEXT_BACKEND))
    dispatch.register(Adapter(DocumentFormat.PDF, docling, markdown, TEXT_BACKEND))
    dispatch.register(Adapter(DocumentFormat.DOCX, docling, markdown, TEXT_BACKEND))
    dispatch.register(Adapter(DocumentFormat.TABULAR_ROW, TabularRowExtractor(), rows, TEXT_BACKEND))
    dispatch.register(Adapter(
        DocumentFormat.AUDIO,
        AudioTranscriptExtractor(
            model_identifier=config.audio.model_identifier,
            chunk_length_s=config.audio.chunk_length_s,
            language=config.audio.language,
            no_speech_threshold=config.audio.no_speech_threshold,
            logprob_threshold=config.audio.logprob_threshold,
            compression_ratio_threshold=config.audio.compression_ratio_threshold,
            temperature=config.audio.temperature,
        ),
        prose,
        TEXT_BACKEND,
    ))
    if config.image_model is not None:
        dispatch.register(Adapter(DocumentFormat.IMAGE, ImageExtractor(), None, IMAGE_BACKEND))
    return dispatch
