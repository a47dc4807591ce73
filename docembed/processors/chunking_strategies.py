#!/usr/bin/env python3
"""
Chunking Strategies Module
===========================

Splits extracted text into token-bounded Segments.

Every strategy works in the token space of a ``TokenCounter``: chunk
boundaries always fall on token starts, and each chunk covers the characters
from its first token up to the first token of the next chunk. Chunks are
therefore contiguous in the source text, and removing the overlap from each
segment and concatenating the rest reconstructs the input exactly.

Strategies differ only in where they prefer to cut:

- ``SemanticChunking`` cuts on paragraph boundaries (Markdown blocks in
  markdown mode), then sentences, then raw tokens for oversized sentences.
- ``TokenWindowChunking`` cuts anywhere, producing fixed token windows.

Overlap policy: each new chunk starts ``overlap`` tokens before the previous
boundary, reduced as needed so that the chunk still fits ``max_tokens`` and
never starts at or before the previous chunk's start.
"""

import logging
import re
from abc import ABC, abstractmethod
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from ..documents import Modality, Segment
from ..errors import ChunkError, EmptyInputError
from .tokenizers import TokenCounter

logger = logging.getLogger(__name__)


@dataclass
class TextSection:
    """
    A run of extracted text with its position in the document.

    Multi-part extractions (PDF pages, audio utterances, table rows) produce
    one section each; ``metadata`` is copied into every segment of the section.
    """
    text: str
    char_offset: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class _TokenIndex:
    """Token start positions of one text, used to map token indices to characters."""

    def __init__(self, text: str, tokenizer: TokenCounter):
        self.text = text
        # Tokens sharing a start offset (byte-level BPE splits) collapse into one position
        self.starts: List[int] = sorted({start for start, _ in tokenizer.token_spans(text)})

    def __len__(self) -> int:
        return len(self.starts)

    def char_at(self, index: int) -> int:
        """Character offset where the chunk boundary before token ``index`` lies."""
        if index <= 0:
            return 0
        if index >= len(self.starts):
            return len(self.text)
        return self.starts[index]

    def index_at(self, char_pos: int) -> int:
        """Index of the first token starting at or after ``char_pos``."""
        return bisect_left(self.starts, char_pos)


class ChunkingStrategy(ABC):
    """
    Base class for token-bounded chunking.

    Subclasses provide the preferred cut points; the base class merges the
    pieces between cut points greedily, applies overlap and guarantees that
    no segment exceeds ``max_tokens`` as measured by the tokenizer.
    """

    def __init__(self, tokenizer: TokenCounter, max_tokens: int = 512, overlap: int = 0):
        self.tokenizer = tokenizer
        self.max_tokens = max_tokens
        self.overlap = overlap
        self._validate(max_tokens, overlap)

    @staticmethod
    def _validate(max_tokens: int, overlap: int):
        if max_tokens <= 0:
            raise ChunkError(f"max_tokens must be positive, got {max_tokens}")
        if overlap < 0 or overlap >= max_tokens:
            raise ChunkError(f"overlap must be in [0, max_tokens), got {overlap} with max_tokens={max_tokens}")

    @abstractmethod
    def _cut_points(self, index: _TokenIndex, max_tokens: int) -> List[int]:
        """
        Token indices where chunks may end, sorted, starting at 0 and ending at len(index).

        Consecutive cut points must be at most ``max_tokens`` apart.
        """

    def chunk(self,
              text: str,
              max_tokens: Optional[int] = None,
              overlap: Optional[int] = None,
              document_id: str = "",
              start_ordinal: int = 0,
              char_offset: int = 0,
              metadata: Optional[Dict[str, Any]] = None,
              modality: Modality = Modality.TEXT) -> Iterator[Segment]:
        """
        Split ``text`` into Segments of at most ``max_tokens`` tokens.

        Arguments are validated and the text tokenized before this returns;
        Segments are then produced lazily by the returned iterator. Each call
        returns an independent iterator.

        Parameters:
            text: Text to split.
            max_tokens: Token budget per segment (defaults to the strategy's).
            overlap: Tokens repeated from the previous segment (defaults to the strategy's).
            document_id: Owner of the produced segments.
            start_ordinal: Ordinal of the first segment.
            char_offset: Added to segment offsets, for text that is a section of a larger document.
            metadata: Copied into each segment.
            modality: Modality recorded on the segments.

        Raises:
            EmptyInputError: ``text`` is empty or contains no tokens.
            ChunkError: invalid ``max_tokens`` or ``overlap``.
        """
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        overlap = self.overlap if overlap is None else overlap
        self._validate(max_tokens, overlap)
        if not text:
            raise EmptyInputError(document_id or None)

        index = _TokenIndex(text, self.tokenizer)
        if len(index) == 0:
            raise EmptyInputError(document_id or None)

        return self._generate(index, max_tokens, overlap, document_id, start_ordinal,
                              char_offset, metadata or {}, modality)

    def chunk_sections(self,
                       sections: Sequence[TextSection],
                       document_id: str,
                       max_tokens: Optional[int] = None,
                       overlap: Optional[int] = None,
                       modality: Modality = Modality.TEXT) -> Iterator[Segment]:
        """
        Chunk every non-blank section with one ordinal sequence for the document.

        Raises:
            EmptyInputError: no section contains any text.
        """
        usable = [s for s in sections if s.text and s.text.strip()]
        if not usable:
            raise EmptyInputError(document_id)
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        overlap = self.overlap if overlap is None else overlap
        self._validate(max_tokens, overlap)
        return self._generate_sections(usable, document_id, max_tokens, overlap, modality)

    def _generate_sections(self, sections, document_id, max_tokens, overlap, modality) -> Iterator[Segment]:
        ordinal = 0
        for section in sections:
            try:
                segments = self.chunk(
                    section.text,
                    max_tokens=max_tokens,
                    overlap=overlap,
                    document_id=document_id,
                    start_ordinal=ordinal,
                    char_offset=section.char_offset,
                    metadata=section.metadata,
                    modality=modality,
                )
            except EmptyInputError:
                # Whitespace or punctuation-free sections yield no tokens
                continue
            for segment in segments:
                ordinal = segment.ordinal + 1
                yield segment
        if ordinal == 0:
            raise EmptyInputError(document_id)

    def _generate(self, index: _TokenIndex, max_tokens: int, overlap: int, document_id: str,
                  start_ordinal: int, char_offset: int, metadata: Dict[str, Any],
                  modality: Modality) -> Iterator[Segment]:
        text = index.text
        cuts = self._cut_points(index, max_tokens)
        total = len(index)

        ordinal = start_ordinal
        position = 0  # first token not yet covered by a previous chunk
        previous_start = None

        while position < total:
            core_start = position
            next_cut = cuts[bisect_right(cuts, core_start)]
            start = core_start
            if previous_start is not None and overlap > 0:
                effective = min(overlap, max_tokens - (next_cut - core_start), core_start - previous_start - 1)
                start = core_start - max(effective, 0)

            # Greedy merge: extend to the furthest cut point that fits
            end = next_cut
            k = bisect_right(cuts, end)
            while k < len(cuts) and cuts[k] - start <= max_tokens:
                end = cuts[k]
                k += 1

            # Exact measurement; retokenizing a slice can differ from the full-text offsets
            start_char, end_char = index.char_at(start), index.char_at(end)
            token_count = self.tokenizer.count(text[start_char:end_char])
            while token_count > max_tokens and end - start > 1:
                if start < core_start:
                    start += 1
                elif end - core_start > 1:
                    end -= 1
                else:
                    break
                start_char, end_char = index.char_at(start), index.char_at(end)
                token_count = self.tokenizer.count(text[start_char:end_char])

            if token_count > max_tokens:
                raise ChunkError(
                    f"Token at offset {start_char} of document {document_id or '<anonymous>'} "
                    f"measures {token_count} tokens, above max_tokens={max_tokens}"
                )

            yield Segment(
                document_id=document_id,
                ordinal=ordinal,
                modality=modality,
                text=text[start_char:end_char],
                token_count=token_count,
                start_char=char_offset + start_char,
                end_char=char_offset + end_char,
                metadata=dict(metadata),
            )
            ordinal += 1
            previous_start = start
            position = end

        logger.debug(f"Chunked {document_id or 'text'} into {ordinal - start_ordinal} segments")


class TokenWindowChunking(ChunkingStrategy):
    """
    Fixed token windows with stride ``max_tokens - overlap``.

    Ignores text structure entirely; useful for uniform segment sizes.
    """

    def _cut_points(self, index: _TokenIndex, max_tokens: int) -> List[int]:
        return list(range(len(index) + 1))


class SemanticChunking(ChunkingStrategy):
    """
    Greedy merge of semantic units.

    Units are paragraphs, or Markdown blocks (headings, fenced code, list
    items and blank-line separated blocks) when ``markdown`` is set. A unit
    larger than the budget is cut at sentence ends, and a sentence larger
    than the budget at token boundaries.
    """

    _PARAGRAPH = re.compile(r"\n[ \t]*\n\s*")
    _SENTENCE_END = re.compile(r"[.!?][\"')\]]*\s+")
    _MD_HEADING = re.compile(r"^#{1,6}\s", re.MULTILINE)
    _MD_FENCE = re.compile(r"^(```|~~~)[^\n]*\n.*?^\1[^\n]*$", re.MULTILINE | re.DOTALL)
    _MD_LIST_ITEM = re.compile(r"\n(?=[ \t]*(?:[-*+]|\d+[.)])\s)")

    def __init__(self, tokenizer: TokenCounter, max_tokens: int = 512, overlap: int = 0, markdown: bool = False):
        super().__init__(tokenizer, max_tokens, overlap)
        self.markdown = markdown

    def _block_starts(self, text: str) -> List[int]:
        """Character offsets where semantic blocks begin."""
        starts = {m.end() for m in self._PARAGRAPH.finditer(text)}
        if not self.markdown:
            return sorted(starts)

        fences = [m.span() for m in self._MD_FENCE.finditer(text)]
        starts.update(m.start() for m in self._MD_HEADING.finditer(text))
        for fence_start, fence_end in fences:
            starts.add(fence_start)
            starts.add(fence_end)
        return sorted(
            pos for pos in starts
            if not any(fs < pos < fe for fs, fe in fences)
        )

    def _sentence_starts(self, text: str, begin: int, end: int) -> List[int]:
        starts = [m.end() for m in self._SENTENCE_END.finditer(text, begin, end)]
        if self.markdown:
            starts.extend(m.end() for m in self._MD_LIST_ITEM.finditer(text, begin, end))
        return sorted(set(starts))

    def _cut_points(self, index: _TokenIndex, max_tokens: int) -> List[int]:
        total = len(index)
        text = index.text

        blocks = sorted({0, total, *(index.index_at(p) for p in self._block_starts(text))})
        cuts: List[int] = [0]
        for block_start, block_end in zip(blocks, blocks[1:]):
            if block_end - block_start <= max_tokens:
                cuts.append(block_end)
                continue

            sentence_bounds = [
                index.index_at(p)
                for p in self._sentence_starts(text, index.char_at(block_start), index.char_at(block_end))
            ]
            sentences = sorted({block_start, block_end, *(b for b in sentence_bounds if block_start < b < block_end)})
            for sentence_start, sentence_end in zip(sentences, sentences[1:]):
                # Hard split at token boundaries
                cuts.extend(range(sentence_start + max_tokens, sentence_end, max_tokens))
                cuts.append(sentence_end)
        return sorted(set(cuts))


class ChunkingStrategyFactory:
    """Factory for creating chunking strategies by name."""

    @staticmethod
    def create_strategy(strategy_type: str, tokenizer: TokenCounter, **kwargs) -> ChunkingStrategy:
        """
        Create a chunking strategy.

        Args:
            strategy_type: 'semantic', 'markdown' or 'token'
            tokenizer: Token counter of the target model
            **kwargs: max_tokens and overlap

        Returns:
            Configured chunking strategy
        """
        strategies = {
            'semantic': lambda: SemanticChunking(tokenizer, **kwargs),
            'markdown': lambda: SemanticChunking(tokenizer, markdown=True, **kwargs),
            'token': lambda: TokenWindowChunking(tokenizer, **kwargs),
        }

        if strategy_type not in strategies:
            raise ValueError(f"Unknown strategy: {strategy_type}. Choose from {sorted(strategies)}")

        return strategies[strategy_type]()


def reconstruct_text(segments: Iterable[Segment]) -> str:
    """Rebuild contiguous source text from segments by dropping overlapping prefixes."""
    parts = []
    covered = None
    for segment in segments:
        if covered is None:
            parts.append(segment.text)
        else:
            parts.append(segment.text[max(covered - segment.start_char, 0):])
        covered = segment.end_char
    return "".join(parts)
