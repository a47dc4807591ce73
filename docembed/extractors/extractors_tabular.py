#!/usr/bin/env python3
"""
Tabular Row Extractor

Renders table rows as ``column: value`` text. A document is either a single
row (a mapping) or a CSV file, in which case every row becomes its own
section tagged with its row index.
"""

import csv
import io
import logging
from typing import Any, List, Mapping

from ..documents import Document
from ..errors import ExtractionError
from .extractors_base import ExtractionResult, ExtractorBase

logger = logging.getLogger(__name__)


def render_row(row: Mapping[str, Any], separator: str = "; ") -> str:
    """Render a row as ``column: value`` pairs, skipping empty cells."""
    parts = []
    for column, value in row.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        parts.append(f"{column}: {value}")
    return separator.join(parts)


class TabularRowExtractor(ExtractorBase):
    """Rows from a mapping or a CSV file."""

    def _extract(self, document: Document) -> ExtractionResult:
        if isinstance(document.content, Mapping):
            return ExtractionResult.from_texts(
                [render_row(document.content)],
                [{"row_index": document.metadata.get("row_index", 0)}],
                metadata={"format": "tabular_row", "columns": list(document.content.keys())},
            )

        reader = csv.DictReader(io.StringIO(self.read_text(document)))
        if not reader.fieldnames:
            raise ExtractionError(document.document_id, "CSV has no header row")

        texts, row_meta = [], []
        for index, row in enumerate(reader):
            if None in row:
                raise ExtractionError(document.document_id, f"row {index} has more cells than the header")
            text = render_row(row)
            if text:
                texts.append(text)
                row_meta.append({"row_index": index})

        return ExtractionResult.from_texts(
            texts,
            row_meta,
            metadata={"format": "tabular_row", "columns": list(reader.fieldnames), "rows": len(texts)},
        )

    @property
    def supported_formats(self) -> List[str]:
        return [".csv"]
