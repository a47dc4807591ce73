"""
Extractors Module

Document extraction for every supported format. Optional stacks (docling
for PDF/DOCX, the Whisper pipeline for audio) are imported on first use.
"""

from .extractors_base import ExtractionResult, ExtractorBase, ExtractorConfig, SECTION_SEPARATOR
from .extractors_docling import DoclingExtractor
from .extractors_media import AudioTranscriptExtractor, ImageExtractor
from .extractors_tabular import TabularRowExtractor, render_row
from .extractors_text import HTMLExtractor, MarkdownExtractor, PlainTextExtractor

__all__ = [
    'ExtractionResult',
    'ExtractorBase',
    'ExtractorConfig',
    'SECTION_SEPARATOR',
    'AudioTranscriptExtractor',
    'DoclingExtractor',
    'HTMLExtractor',
    'ImageExtractor',
    'MarkdownExtractor',
    'PlainTextExtractor',
    'TabularRowExtractor',
    'render_row',
]
