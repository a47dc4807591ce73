#!/usr/bin/env python3
"""
Docling Extractor

PDF and DOCX conversion through docling. PDFs produce one section per page
(rendered as Markdown) so segments keep their page number; DOCX files have
no pages and produce a single section.

docling is an optional dependency (``pip install docembed[documents]``) and
is imported when the first document is converted.
"""

import io
import logging
import threading
from typing import List

from ..documents import Document
from ..errors import ExtractionError
from .extractors_base import ExtractionResult, ExtractorBase, document_source

logger = logging.getLogger(__name__)


class DoclingExtractor(ExtractorBase):
    """PDF/DOCX extraction with docling's DocumentConverter."""

    def __init__(self, config=None):
        super().__init__(config)
        self._converter = None
        self._lock = threading.Lock()

    def _get_converter(self, document_id: str):
        if self._converter is None:
            try:
                from docling.document_converter import DocumentConverter
            except ImportError as e:
                raise ExtractionError(document_id, f"docling is not installed: {e}") from e
            self._converter = DocumentConverter()
            logger.info("Initialized docling DocumentConverter")
        return self._converter

    @staticmethod
    def stream_name(document: Document) -> str:
        """File name docling sees for in-memory content; its suffix picks the input format."""
        if document.path is not None and document.path.suffix:
            suffix = document.path.suffix
        elif document.format:
            suffix = f".{document.format.lstrip('.')}"
        else:
            suffix = ".pdf"
        return f"{document.document_id}{suffix.lower()}"

    def _source(self, document: Document):
        if document.path is not None and document.content is None:
            self.validate_file(document)
            return document.path

        from docling.datamodel.base_models import DocumentStream

        return DocumentStream(name=self.stream_name(document), stream=io.BytesIO(self.read_bytes(document)))

    def _extract(self, document: Document) -> ExtractionResult:
        with self._lock:
            converter = self._get_converter(document.document_id)
            logger.debug(f"Converting {document_source(document)}")
            result = converter.convert(self._source(document), raises_on_error=False)

        from docling.datamodel.base_models import ConversionStatus

        if result.status not in {ConversionStatus.SUCCESS, ConversionStatus.PARTIAL_SUCCESS}:
            messages = [getattr(err, "error_message", "") for err in getattr(result, "errors", []) or []]
            detail = f"status={getattr(result.status, 'value', result.status)}"
            if any(messages):
                detail += " " + "; ".join(m for m in messages if m)
            raise ExtractionError(document.document_id, detail)
        if result.document is None:
            raise ExtractionError(document.document_id, "empty-document")

        doc = result.document
        num_pages = doc.num_pages() if callable(getattr(doc, "num_pages", None)) else 0
        metadata = {"format": "docling", "num_pages": num_pages}

        if num_pages:
            texts, page_meta = [], []
            for page_no in range(1, num_pages + 1):
                page_text = doc.export_to_markdown(page_no=page_no)
                if page_text.strip():
                    texts.append(page_text)
                    page_meta.append({"page_number": page_no})
            return ExtractionResult.from_texts(texts, page_meta, metadata=metadata)

        return ExtractionResult.from_texts([doc.export_to_markdown()], metadata=metadata)

    @property
    def supported_formats(self) -> List[str]:
        return [".pdf", ".docx"]
