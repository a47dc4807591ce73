#!/usr/bin/env python3
"""
Text Extractors

Plain text, Markdown and HTML. Markdown is kept verbatim so the chunker
can cut on its block structure; HTML is reduced to visible text with one
line per block element.
"""

import logging
import re
from typing import List

from bs4 import BeautifulSoup

from ..documents import Document
from .extractors_base import ExtractionResult, ExtractorBase

logger = logging.getLogger(__name__)


class PlainTextExtractor(ExtractorBase):
    """UTF-8 text, returned unchanged."""

    def _extract(self, document: Document) -> ExtractionResult:
        text = self.read_text(document)
        return ExtractionResult.from_texts([text], metadata={"format": "text"})

    @property
    def supported_formats(self) -> List[str]:
        return [".txt", ".text"]


class MarkdownExtractor(ExtractorBase):
    """Markdown source; YAML front matter is moved into metadata."""

    _FRONT_MATTER = re.compile(r"\A---\n(.*?)\n---\n", re.DOTALL)

    def _extract(self, document: Document) -> ExtractionResult:
        text = self.read_text(document)
        metadata = {"format": "markdown"}
        body_start = 0
        match = self._FRONT_MATTER.match(text)
        if match:
            metadata["front_matter"] = match.group(1)
            body_start = match.end()
        # Offsets stay relative to the source file, front matter included
        return ExtractionResult.from_texts([text[body_start:]], start_offset=body_start, metadata=metadata)

    @property
    def supported_formats(self) -> List[str]:
        return [".md", ".markdown"]


class HTMLExtractor(ExtractorBase):
    """Visible text of an HTML page via BeautifulSoup."""

    _DROP_TAGS = ["script", "style", "noscript", "template", "svg", "head"]
    _BLANK_RUNS = re.compile(r"\n{3,}")

    def _extract(self, document: Document) -> ExtractionResult:
        soup = BeautifulSoup(self.read_bytes(document), "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else None
        for tag in soup(self._DROP_TAGS):
            tag.decompose()

        lines = [line.strip() for line in soup.get_text(separator="\n").splitlines()]
        text = self._BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()

        metadata = {"format": "html"}
        if title:
            metadata["title"] = title
        return ExtractionResult.from_texts([text], metadata=metadata)

    @property
    def supported_formats(self) -> List[str]:
        return [".html", ".htm"]
