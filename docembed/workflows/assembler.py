#!/usr/bin/env python3
"""
Embedding Record Assembler

Pairs vectors with their segments and hands the results to the consumer
sink, the only place pipeline output leaves the process.

Batches finish out of order, so results are buffered per document and
released in ordinal order. A failed segment occupies its ordinal slot just
like a record, which keeps sink order stable across partial failures. Every
segment yields exactly one record or exactly one failure notification; any
violation is an ``AssemblyError``.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from ..documents import EmbeddingRecord, Segment, SegmentFailure
from ..errors import AssemblyError

logger = logging.getLogger(__name__)


class ConsumerSink(ABC):
    """Receives records and failure notifications, in order per document."""

    @abstractmethod
    def accept(self, record: EmbeddingRecord) -> None:
        """Take one embedding record."""

    @abstractmethod
    def accept_failure(self, document_id: str, segment_ordinal: Optional[int], reason: str) -> None:
        """Take one failure; ``segment_ordinal`` is None for document-level failures."""

    def close(self) -> None:
        pass


class InMemorySink(ConsumerSink):
    """Collects everything in lists."""

    def __init__(self):
        self.records: List[EmbeddingRecord] = []
        self.failures: List[SegmentFailure] = []

    def accept(self, record: EmbeddingRecord) -> None:
        self.records.append(record)

    def accept_failure(self, document_id: str, segment_ordinal: Optional[int], reason: str) -> None:
        self.failures.append(SegmentFailure(document_id, segment_ordinal, reason))

    def records_for(self, document_id: str) -> List[EmbeddingRecord]:
        return [r for r in self.records if r.document_id == document_id]


class JsonlSink(ConsumerSink):
    """
    Appends one JSON object per line, for loading into a vector store.

    Records are written as ``{"type": "record", ...}`` and failures as
    ``{"type": "failure", "document_id", "ordinal", "reason"}``.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("a", encoding="utf-8")

    def _write(self, payload: dict):
        self._file.write(json.dumps(payload, default=str))
        self._file.write("\n")

    def accept(self, record: EmbeddingRecord) -> None:
        self._write({"type": "record", **record.to_dict()})

    def accept_failure(self, document_id: str, segment_ordinal: Optional[int], reason: str) -> None:
        self._write({"type": "failure", "document_id": document_id, "ordinal": segment_ordinal, "reason": reason})

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


@dataclass
class DocumentOutcome:
    """What happened to one document."""
    document_id: str
    records: int = 0
    failures: List[SegmentFailure] = field(default_factory=list)
    document_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.document_error is None and not self.failures

    @property
    def reasons(self) -> List[str]:
        reasons = [self.document_error] if self.document_error else []
        reasons.extend(f"segment {f.ordinal}: {f.reason}" for f in self.failures)
        return reasons


@dataclass
class _DocumentState:
    outcome: DocumentOutcome
    expected: Optional[int] = None
    next_ordinal: int = 0
    pending: Dict[int, Union[EmbeddingRecord, SegmentFailure]] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.expected is not None and self.next_ordinal >= self.expected


class RecordAssembler:
    """
    Orders results per document and forwards them to a sink.

    Thread-safe: inference workers report results, preprocessing workers
    report document totals and document-level failures.
    """

    def __init__(self, sink: ConsumerSink,
                 on_document_complete: Optional[Callable[[DocumentOutcome], None]] = None):
        self.sink = sink
        self.on_document_complete = on_document_complete
        self._states: Dict[str, _DocumentState] = {}
        self._lock = threading.Lock()

    def _state(self, document_id: str) -> _DocumentState:
        state = self._states.get(document_id)
        if state is None:
            state = _DocumentState(outcome=DocumentOutcome(document_id))
            self._states[document_id] = state
        return state

    def _buffer(self, item: Union[EmbeddingRecord, SegmentFailure]):
        state = self._state(item.document_id)
        ordinal = item.ordinal
        if ordinal < state.next_ordinal or ordinal in state.pending:
            raise AssemblyError(f"Segment {ordinal} of document {item.document_id} reported twice")
        if state.expected is not None and ordinal >= state.expected:
            raise AssemblyError(
                f"Segment {ordinal} of document {item.document_id} is beyond its {state.expected} segments"
            )
        state.pending[ordinal] = item
        self._release(state)

    @staticmethod
    def _deliver(handler, *args):
        """Hand one item to the sink; a sink that cannot take it loses output, which is fatal."""
        try:
            handler(*args)
        except Exception as e:
            raise AssemblyError(f"Sink rejected output: {type(e).__name__}: {e}") from e

    def _release(self, state: _DocumentState):
        outcome = state.outcome
        while state.next_ordinal in state.pending:
            item = state.pending.pop(state.next_ordinal)
            if isinstance(item, EmbeddingRecord):
                self._deliver(self.sink.accept, item)
                outcome.records += 1
            else:
                self._deliver(self.sink.accept_failure, item.document_id, item.ordinal, item.reason)
                outcome.failures.append(item)
            state.next_ordinal += 1

        if state.complete and self.on_document_complete is not None:
            self.on_document_complete(outcome)

    def accept_results(self, segments: Sequence[Segment], vectors: np.ndarray, model_name: str = ""):
        """Pair each segment with the vector at the same position."""
        if len(segments) != len(vectors):
            raise AssemblyError(f"{len(vectors)} vectors returned for {len(segments)} segments")
        with self._lock:
            for segment, vector in zip(segments, vectors):
                self._buffer(EmbeddingRecord.from_segment(segment, vector, model_name))

    def reject_segments(self, segments: Sequence[Segment], reason: str):
        """Report every segment as failed with ``reason``."""
        with self._lock:
            for segment in segments:
                self._buffer(SegmentFailure(segment.document_id, segment.ordinal, reason))

    def fail_document(self, document_id: str, reason: str):
        """Report a failure that is not tied to a segment (dispatch, extraction, chunking)."""
        with self._lock:
            state = self._state(document_id)
            if state.outcome.document_error is not None:
                return
            state.outcome.document_error = reason
            self._deliver(self.sink.accept_failure, document_id, None, reason)

    def expect(self, document_id: str, total: int):
        """Declare how many segments a document produced; it completes once all are emitted."""
        with self._lock:
            state = self._state(document_id)
            if state.expected is not None:
                raise AssemblyError(f"Segment total for document {document_id} declared twice")
            if state.pending and max(state.pending) >= total:
                raise AssemblyError(f"Document {document_id} has results beyond its {total} segments")
            if state.next_ordinal > total:
                raise AssemblyError(f"Document {document_id} emitted more than {total} segments")
            state.expected = total
            self._release(state)

    def finish(self) -> Dict[str, DocumentOutcome]:
        """
        Return every document's outcome.

        Raises:
            AssemblyError: a document has segments that were never reported.
        """
        with self._lock:
            incomplete = [doc_id for doc_id, state in self._states.items() if not state.complete]
            if incomplete:
                raise AssemblyError(f"Documents with unreported segments: {sorted(incomplete)}")
            return {doc_id: state.outcome for doc_id, state in self._states.items()}
