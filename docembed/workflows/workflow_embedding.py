#!/usr/bin/env python3
"""
Embedding Workflow

Runs a stream of documents through the whole pipeline:

    dispatch -> extract -> chunk -> batch -> embed -> assemble -> sink

Preprocessing (dispatch, extraction, chunking) runs on a thread pool and
feeds the batch scheduler as segments are produced, so preprocessing and
inference overlap. A failing document never stops the run; its failure is
reported to the sink and listed in the run manifest. Only a model that
cannot be loaded, or a broken assembly invariant, ends the run early.
"""

import logging
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from tqdm import tqdm

from ..dispatch import IMAGE_BACKEND, TEXT_BACKEND, Adapter, AdapterDispatch, ChunkingConfig, build_default_dispatch
from ..documents import Document, Segment
from ..embedders import EmbedderFactory, EmbeddingBackend
from ..errors import (
    AssemblyError,
    ChunkError,
    DispatchError,
    ExtractionError,
    ModelLoadFailedError,
    TokenizerUnavailableError,
    UnsupportedFormatError,
)
from ..extractors import ExtractionResult
from ..framework.config import Config, ConfigManager
from ..framework.metrics import MetricsCollector
from ..logging import LogManager
from ..processors import ChunkingStrategy, ChunkingStrategyFactory, RegexTokenCounter
from .assembler import ConsumerSink, DocumentOutcome, InMemorySink, RecordAssembler
from .scheduler import CANCELLED, BatchScheduler, SchedulerConfig
from .workflow_base import RunManifest, WorkflowBase, WorkflowConfig

logger = logging.getLogger(__name__)


class EmbeddingWorkflow(WorkflowBase):
    """
    Document-to-embedding pipeline for one configuration.

    A workflow may run several times; each ``execute`` call is one run with
    its own run id, scheduler and manifest. Backends are shared across runs,
    so model weights are loaded once.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 sink: Optional[ConsumerSink] = None,
                 dispatch: Optional[AdapterDispatch] = None,
                 backends: Optional[Mapping[str, EmbeddingBackend]] = None,
                 metrics: Optional[MetricsCollector] = None,
                 workflow_config: Optional[WorkflowConfig] = None):
        """
        Args:
            config: Pipeline configuration (loaded through ConfigManager when omitted)
            sink: Receiver of records and failures (in-memory when omitted)
            dispatch: Format routing (standard adapters when omitted)
            backends: Backends by key (created from the model configs when omitted)
            metrics: Collector shared by all runs (one per run when omitted)
            workflow_config: Name and progress display
        """
        super().__init__(workflow_config or WorkflowConfig(name="embedding"))
        self.settings = config or ConfigManager.load()
        self.sink = sink or InMemorySink()
        self.dispatch = dispatch or build_default_dispatch(self.settings)
        self.backends: Dict[str, EmbeddingBackend] = (
            dict(backends) if backends is not None else self._create_backends()
        )
        self.metrics = metrics

        self._chunkers: Dict[Tuple[str, ChunkingConfig], ChunkingStrategy] = {}
        self._chunker_lock = threading.Lock()

    def _create_backends(self) -> Dict[str, EmbeddingBackend]:
        backends = {TEXT_BACKEND: EmbedderFactory.create(self.settings.text_model)}
        if self.settings.image_model is not None:
            backends[IMAGE_BACKEND] = EmbedderFactory.create(self.settings.image_model)
        return backends

    @property
    def supports_streaming(self) -> bool:
        return True

    def validate_inputs(self, **kwargs) -> bool:
        """Check that every backend the dispatch routes to is configured."""
        missing = [key for key in self.dispatch.backend_keys if key not in self.backends]
        if missing:
            logger.warning(f"No backend configured for {missing}; documents routed there will fail")
            return False
        return True

    def execute(self,
                documents: Iterable[Document] = (),
                cancel_event: Optional[threading.Event] = None,
                show_progress: Optional[bool] = None,
                **kwargs) -> RunManifest:
        """
        Embed every document and return the run manifest.

        Args:
            documents: Documents to process, consumed lazily
            cancel_event: Setting it cancels the run; pending segments are
                reported as cancelled
            show_progress: Progress bar override (defaults to the workflow config)

        Raises:
            ModelLoadFailedError: a backend could not load its model or tokenizer
            AssemblyError: results were lost or duplicated
        """
        run_id = f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        start_time = datetime.now()
        log_dir = LogManager.setup(self.settings.logging_level, self.settings.log_dir, self.settings.logging_format)
        run_log = LogManager.get_logger("embedding_workflow", run_id)
        metrics = self.metrics or MetricsCollector(
            f"embedding_run_{run_id}", metrics_dir=self.settings.log_dir or log_dir
        )
        show_progress = self.config.show_progress if show_progress is None else show_progress

        self.validate_inputs()
        run_log.info("run_started", backends=sorted(self.backends),
                     formats=[f.value for f in self.dispatch.formats])

        assembler = RecordAssembler(self.sink, on_document_complete=self._document_complete)
        scheduler = BatchScheduler(
            self.backends,
            assembler,
            SchedulerConfig.from_pipeline_config(self.settings.pipeline),
            metrics=metrics,
            cancel_event=cancel_event,
        )

        order: List[str] = []
        errors: List[str] = []
        scheduler.start()
        try:
            self._preprocess_all(documents, scheduler, assembler, order, errors, show_progress)
        finally:
            scheduler.close()

        try:
            if scheduler.fatal_error is not None:
                run_log.error("run_failed", error=str(scheduler.fatal_error))
                raise scheduler.fatal_error
            outcomes = assembler.finish()
        finally:
            if self.settings.metrics_enabled:
                metrics.flush()

        manifest = self._build_manifest(run_id, start_time, order, outcomes, errors, scheduler.cancelled)
        run_log.info("run_finished",
                     succeeded=len(manifest.succeeded),
                     failed=len(manifest.failed),
                     records=manifest.records_emitted,
                     cancelled=manifest.cancelled,
                     duration_seconds=round(manifest.duration_seconds, 3))
        self.save_results(manifest, self.settings.log_dir or log_dir)
        return manifest

    def _preprocess_all(self,
                        documents: Iterable[Document],
                        scheduler: BatchScheduler,
                        assembler: RecordAssembler,
                        order: List[str],
                        errors: List[str],
                        show_progress: bool):
        workers = self.settings.pipeline.preprocess_workers
        total = len(documents) if hasattr(documents, "__len__") else None
        seen: Set[str] = set()
        pending: Set[Future] = set()

        with tqdm(total=total, desc="Embedding documents", unit="doc", disable=not show_progress) as progress, \
                ThreadPoolExecutor(max_workers=workers, thread_name_prefix="preprocess") as pool:
            for document in documents:
                if document.document_id in seen:
                    message = f"Duplicate document id {document.document_id} skipped"
                    logger.warning(message)
                    errors.append(message)
                    continue
                seen.add(document.document_id)
                order.append(document.document_id)

                if scheduler.cancelled:
                    assembler.fail_document(document.document_id, CANCELLED)
                    assembler.expect(document.document_id, 0)
                    break

                # Bounded submission keeps an unbounded document stream from piling up
                if len(pending) >= workers * 2:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    self._collect(done, progress)
                pending.add(pool.submit(self._preprocess, document, scheduler, assembler))

            done, _ = wait(pending)
            self._collect(done, progress)

    @staticmethod
    def _collect(done: Iterable[Future], progress: tqdm):
        for future in done:
            future.result()
            progress.update(1)

    def _preprocess(self, document: Document, scheduler: BatchScheduler, assembler: RecordAssembler):
        """Route, extract and chunk one document, submitting segments as they are produced."""
        doc_id = document.document_id
        submitted = 0
        try:
            adapter = self.dispatch.route(document)
            backend = self.backends.get(adapter.backend_key)
            if backend is None:
                raise UnsupportedFormatError(doc_id, f"{adapter.format.value} (no backend '{adapter.backend_key}')")

            extraction = adapter.extractor.extract(document)
            logger.debug(f"Extracted {doc_id} with {adapter.extractor.__class__.__name__} "
                         f"in {extraction.processing_time:.2f}s")

            for segment in self._segments_for(document, adapter, backend, extraction):
                submitted += 1
                if not scheduler.submit(segment, adapter.backend_key):
                    break

        except TokenizerUnavailableError as e:
            # The backend cannot size any chunk, so its model is unusable
            self._fail_document(doc_id, str(e), scheduler, assembler)
            scheduler.abort(ModelLoadFailedError(e.model_identifier, e))
        except (DispatchError, ExtractionError, ChunkError) as e:
            logger.warning(f"Document {doc_id} failed: {e}")
            self._fail_document(doc_id, str(e), scheduler, assembler)
        except AssemblyError as e:
            scheduler.abort(e)
        except Exception as e:
            logger.exception(f"Unexpected error preprocessing {doc_id}")
            self._fail_document(doc_id, f"{type(e).__name__}: {e}", scheduler, assembler)
        finally:
            try:
                assembler.expect(doc_id, submitted)
            except AssemblyError as e:
                scheduler.abort(e)
            scheduler.document_exhausted(doc_id)

    @staticmethod
    def _fail_document(doc_id: str, reason: str, scheduler: BatchScheduler, assembler: RecordAssembler):
        try:
            assembler.fail_document(doc_id, reason)
        except AssemblyError as e:
            scheduler.abort(e)

    def _segments_for(self,
                      document: Document,
                      adapter: Adapter,
                      backend: EmbeddingBackend,
                      extraction: ExtractionResult) -> Iterator[Segment]:
        modality = adapter.format.modality
        base_metadata = {**document.metadata, **extraction.metadata}

        if adapter.chunking is None:
            return iter([
                Segment(
                    document_id=document.document_id,
                    ordinal=ordinal,
                    modality=modality,
                    payload=payload,
                    metadata=dict(base_metadata),
                )
                for ordinal, payload in enumerate(extraction.media)
            ])

        sections = [replace(s, metadata={**base_metadata, **s.metadata}) for s in extraction.sections]
        chunker = self._chunker(adapter.backend_key, adapter.chunking, backend)
        return chunker.chunk_sections(sections, document.document_id, modality=modality)

    def _chunker(self, backend_key: str, chunking: ChunkingConfig, backend: EmbeddingBackend) -> ChunkingStrategy:
        """Chunker sized to the backend's tokenizer and sequence limit, built once per run configuration."""
        key = (backend_key, chunking)
        with self._chunker_lock:
            chunker = self._chunkers.get(key)
            if chunker is None:
                tokenizer = backend.token_counter() or RegexTokenCounter.words()
                budget = backend.chunk_budget(chunking.max_tokens)
                overlap = min(chunking.overlap, budget - 1)
                if budget < chunking.max_tokens:
                    logger.info(f"Chunk budget for '{backend_key}' capped at {budget} tokens "
                                f"by {backend.config.model_name}")
                chunker = ChunkingStrategyFactory.create_strategy(
                    chunking.strategy, tokenizer, max_tokens=budget, overlap=overlap
                )
                self._chunkers[key] = chunker
            return chunker

    @staticmethod
    def _document_complete(outcome: DocumentOutcome):
        if outcome.succeeded:
            logger.debug(f"Document {outcome.document_id} complete: {outcome.records} records")
        else:
            logger.info(f"Document {outcome.document_id} finished with failures: {outcome.reasons}")

    def _build_manifest(self,
                        run_id: str,
                        start_time: datetime,
                        order: List[str],
                        outcomes: Dict[str, DocumentOutcome],
                        errors: List[str],
                        cancelled: bool) -> RunManifest:
        succeeded = [doc_id for doc_id in order if outcomes[doc_id].succeeded]
        failed = {doc_id: outcomes[doc_id].reasons for doc_id in order if not outcomes[doc_id].succeeded}
        if cancelled:
            errors.append("Run cancelled")

        return RunManifest(
            workflow_name=self.name,
            success=not failed and not cancelled,
            items_processed=len(succeeded),
            items_failed=len(failed),
            start_time=start_time,
            end_time=datetime.now(),
            metadata={
                "backends": {key: b.get_model_info() for key, b in self.backends.items()},
                "adapters": self.dispatch.describe(),
            },
            errors=errors,
            run_id=run_id,
            succeeded=succeeded,
            failed=failed,
            records_emitted=sum(o.records for o in outcomes.values()),
            segments_failed=sum(len(o.failures) for o in outcomes.values()),
            cancelled=cancelled,
        )
