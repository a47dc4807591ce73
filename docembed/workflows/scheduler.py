#!/usr/bin/env python3
"""
Batch Scheduler

Groups segments into batches and runs them on the inference pool.

Preprocessing workers ``submit`` segments as the chunker yields them. Each
(backend, modality) pair has its own accumulator, so a batch never mixes
modalities. An accumulator is sealed into a batch when it reaches the
backend's batch size, or, once a document's stream is exhausted, after a
short wait window in case more segments arrive.

Sealed batches pass through a bounded queue to the inference threads. At
most ``max_in_flight_batches`` batches are queued or executing at any time;
producers that would exceed this block, which is the pipeline's
backpressure.

Failure handling per batch:

- transient inference failures and timeouts are retried with exponential
  backoff, up to ``retry_count`` times
- any other backend error fails every segment of that batch only
- ``ModelLoadFailedError`` and ``AssemblyError`` are run-fatal: the run is
  cancelled and the error kept for the caller
"""

import itertools
import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from ..documents import Batch, Modality, Segment
from ..embedders.embedders_base import EmbeddingBackend
from ..errors import AssemblyError, BackendError, DocEmbedError, InferenceFailedError, ModelLoadFailedError
from ..framework.metrics import MetricsCollector
from .assembler import RecordAssembler

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
MAX_BACKOFF_SECONDS = 30.0


@dataclass(frozen=True)
class SchedulerConfig:
    """Inference pool sizing, batching window and retry policy."""
    inference_workers: int = 1
    max_in_flight_batches: int = 4
    batch_wait_seconds: float = 0.05
    inference_timeout_seconds: float = 120.0
    retry_count: int = 2
    retry_backoff_seconds: float = 0.5

    @classmethod
    def from_pipeline_config(cls, pipeline_config) -> "SchedulerConfig":
        return cls(
            inference_workers=pipeline_config.inference_workers,
            max_in_flight_batches=pipeline_config.max_in_flight_batches,
            batch_wait_seconds=pipeline_config.batch_wait_seconds,
            inference_timeout_seconds=pipeline_config.inference_timeout_seconds,
            retry_count=pipeline_config.retry_count,
            retry_backoff_seconds=pipeline_config.retry_backoff_seconds,
        )


@dataclass
class _Accumulator:
    segments: List[Segment] = field(default_factory=list)
    deadline: Optional[float] = None


AccumulatorKey = Tuple[str, Modality]


class BatchScheduler:
    """
    Batch formation and inference pool for one run.

    Usage::

        scheduler = BatchScheduler(backends, assembler, config)
        scheduler.start()
        scheduler.submit(segment, "text")      # from preprocessing workers
        scheduler.document_exhausted(doc_id)
        scheduler.close()                      # flush and wait for inference
    """

    def __init__(self,
                 backends: Mapping[str, EmbeddingBackend],
                 assembler: RecordAssembler,
                 config: Optional[SchedulerConfig] = None,
                 metrics: Optional[MetricsCollector] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.backends = dict(backends)
        self.assembler = assembler
        self.config = config or SchedulerConfig()
        self.metrics = metrics or MetricsCollector("scheduler")

        self._cancel = cancel_event or threading.Event()
        self._cond = threading.Condition()
        self._accumulators: Dict[AccumulatorKey, _Accumulator] = {}
        self._batch_ids = itertools.count()
        self._queue: "queue.Queue[Optional[Batch]]" = queue.Queue(maxsize=self.config.max_in_flight_batches)
        self._in_flight = threading.BoundedSemaphore(self.config.max_in_flight_batches)
        self._workers: List[threading.Thread] = []
        self._flusher: Optional[threading.Thread] = None
        self._started = False
        self._closed = False
        self._fatal_error: Optional[DocEmbedError] = None
        self._fatal_lock = threading.Lock()

    # Lifecycle

    def start(self):
        if self._started:
            raise RuntimeError("Scheduler already started")
        self._started = True
        for worker_id in range(self.config.inference_workers):
            worker = threading.Thread(
                target=self._inference_loop,
                args=(worker_id,),
                name=f"inference-{worker_id}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        self._flusher = threading.Thread(target=self._flush_loop, name="batch-flusher", daemon=True)
        self._flusher.start()
        logger.info(f"Scheduler started with {self.config.inference_workers} inference workers, "
                    f"max {self.config.max_in_flight_batches} batches in flight")

    def close(self):
        """Seal remaining segments, wait for every batch to finish and stop the workers."""
        with self._cond:
            if self._closed:
                return
            batches = [] if self._cancel.is_set() else self._seal_all()
            self._closed = True
            self._cond.notify_all()

        for batch in batches:
            self._dispatch(batch)
        if self._flusher is not None:
            self._flusher.join()
        self._drain_cancelled()

        for _ in self._workers:
            self._queue.put(None)
        for worker in self._workers:
            worker.join()
        logger.info(f"Scheduler closed: {self.metrics.counter('batches_dispatched')} batches dispatched")

    def cancel(self):
        """Stop accepting segments; pending segments are reported as cancelled."""
        if not self._cancel.is_set():
            logger.warning("Run cancelled")
        self._cancel.set()
        self._drain_cancelled()
        with self._cond:
            self._cond.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def fatal_error(self) -> Optional[DocEmbedError]:
        return self._fatal_error

    def abort(self, error: DocEmbedError):
        """Record a run-fatal error and cancel the run."""
        with self._fatal_lock:
            if self._fatal_error is None:
                self._fatal_error = error
                logger.error(f"Run-fatal error: {error}")
        self.cancel()

    # Producer side

    def submit(self, segment: Segment, backend_key: str) -> bool:
        """
        Queue a segment for embedding.

        Blocks while the maximum number of batches is in flight. Returns False
        if the run is cancelled; the segment is then reported as cancelled.
        """
        if backend_key not in self.backends:
            raise KeyError(f"No backend registered under '{backend_key}'")

        sealed = None
        with self._cond:
            if self._closed:
                raise RuntimeError("Scheduler is closed")
            if not self._cancel.is_set():
                key = (backend_key, segment.modality)
                accumulator = self._accumulators.setdefault(key, _Accumulator())
                accumulator.segments.append(segment)
                if len(accumulator.segments) >= self.backends[backend_key].config.batch_size:
                    sealed = self._seal(key)
                accepted = True
            else:
                accepted = False

        if not accepted:
            self.assembler.reject_segments([segment], CANCELLED)
            return False
        if sealed is not None:
            self._dispatch(sealed)
        return True

    def document_exhausted(self, document_id: str):
        """Start the wait window for accumulators holding segments of a finished document."""
        batches = []
        with self._cond:
            now = time.monotonic()
            for key, accumulator in self._accumulators.items():
                if not any(s.document_id == document_id for s in accumulator.segments):
                    continue
                if self.config.batch_wait_seconds <= 0:
                    batches.append(self._seal(key))
                    continue
                deadline = now + self.config.batch_wait_seconds
                if accumulator.deadline is None or deadline < accumulator.deadline:
                    accumulator.deadline = deadline
            self._cond.notify_all()

        for batch in batches:
            self._dispatch(batch)

    # Batch formation

    def _seal(self, key: AccumulatorKey) -> Batch:
        accumulator = self._accumulators[key]
        batch = Batch(batch_id=next(self._batch_ids), backend_key=key[0], segments=tuple(accumulator.segments))
        accumulator.segments = []
        accumulator.deadline = None
        return batch

    def _seal_all(self) -> List[Batch]:
        return [self._seal(key) for key, acc in self._accumulators.items() if acc.segments]

    def _flush_loop(self):
        while True:
            with self._cond:
                if self._closed:
                    return
                now = time.monotonic()
                due = [
                    key for key, acc in self._accumulators.items()
                    if acc.segments and acc.deadline is not None and acc.deadline <= now
                ]
                batches = [] if self._cancel.is_set() else [self._seal(key) for key in due]
                if not batches:
                    deadlines = [acc.deadline for acc in self._accumulators.values()
                                 if acc.segments and acc.deadline is not None]
                    timeout = min(deadlines) - now if deadlines else 0.1
                    self._cond.wait(timeout=max(min(timeout, 0.1), 0.001))
            if self._cancel.is_set():
                self._drain_cancelled()
            for batch in batches:
                self._dispatch(batch)

    def _drain_cancelled(self):
        if not self._cancel.is_set():
            return
        with self._cond:
            stranded = self._seal_all()
        for batch in stranded:
            self._report(self.assembler.reject_segments, batch.segments, CANCELLED)

    def _dispatch(self, batch: Batch):
        """Hand a batch to the inference pool, waiting for an in-flight slot."""
        while not self._in_flight.acquire(timeout=0.1):
            if self._cancel.is_set():
                self._report(self.assembler.reject_segments, batch.segments, CANCELLED)
                return
        if self._cancel.is_set():
            self._in_flight.release()
            self._report(self.assembler.reject_segments, batch.segments, CANCELLED)
            return
        self._queue.put(batch)
        self.metrics.increment("batches_dispatched")
        logger.debug(f"Dispatched batch {batch.batch_id} ({len(batch)} segments, {batch.backend_key})")

    # Inference side

    def _inference_loop(self, worker_id: int):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"inference-call-{worker_id}")
        try:
            while True:
                batch = self._queue.get()
                if batch is None:
                    break
                try:
                    if self._cancel.is_set():
                        self._report(self.assembler.reject_segments, batch.segments, CANCELLED)
                        continue
                    executor = self._run_batch(batch, executor, worker_id)
                except Exception as e:
                    # The worker must outlive any failure or producers wait on it forever
                    logger.exception(f"Inference worker {worker_id} failed on batch {batch.batch_id}")
                    if not isinstance(e, DocEmbedError):
                        e = AssemblyError(f"Inference worker failed: {type(e).__name__}: {e}")
                    self.abort(e)
                finally:
                    self._in_flight.release()
        finally:
            executor.shutdown(wait=False)

    def _run_batch(self, batch: Batch, executor: ThreadPoolExecutor, worker_id: int) -> ThreadPoolExecutor:
        """
        Embed one batch with timeout and retries and report the outcome.

        Returns the executor to use for the next batch; a timed-out call
        leaves its thread busy, so the executor is replaced.
        """
        backend = self.backends[batch.backend_key]
        segments = list(batch.segments)
        timeout = self.config.inference_timeout_seconds
        attempt = 0

        while True:
            attempt += 1
            future = executor.submit(backend.embed_batch, segments)
            start = time.perf_counter()
            try:
                vectors = future.result(timeout=timeout)
            except FutureTimeoutError:
                future.cancel()
                executor.shutdown(wait=False)
                executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"inference-call-{worker_id}")
                error = InferenceFailedError(f"timeout after {timeout}s", transient=True)
            except ModelLoadFailedError as e:
                self._report(self.assembler.reject_segments, segments, str(e))
                self.abort(e)
                return executor
            except InferenceFailedError as e:
                error = e
            except BackendError as e:
                self._batch_failed(batch, str(e))
                return executor
            except Exception as e:
                logger.exception(f"Unexpected error in batch {batch.batch_id}")
                self._batch_failed(batch, f"{type(e).__name__}: {e}")
                return executor
            else:
                self.metrics.record_duration("inference_seconds", time.perf_counter() - start)
                self._report(self.assembler.accept_results, segments, vectors, backend.config.model_name)
                self.metrics.increment("batches_succeeded")
                self.metrics.increment("segments_embedded", len(segments))
                return executor

            if error.transient and attempt <= self.config.retry_count and not self._cancel.is_set():
                delay = min(self.config.retry_backoff_seconds * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS)
                logger.warning(f"Batch {batch.batch_id} attempt {attempt} failed ({error.reason}); "
                               f"retrying in {delay:.2f}s")
                self.metrics.increment("batches_retried")
                if self._cancel.wait(delay):
                    self._report(self.assembler.reject_segments, segments, CANCELLED)
                    return executor
                continue

            self._batch_failed(batch, error.reason)
            return executor

    def _report(self, handler, *args):
        """Pass results to the assembler; an assembly or sink failure ends the run."""
        try:
            handler(*args)
        except AssemblyError as e:
            self.abort(e)

    def _batch_failed(self, batch: Batch, reason: str):
        logger.error(f"Batch {batch.batch_id} failed for documents {list(batch.document_ids)}: {reason}")
        self.metrics.increment("batches_failed")
        self.metrics.increment("segments_failed", len(batch))
        self.metrics.record_error(f"batch {batch.batch_id}: {reason}")
        self._report(self.assembler.reject_segments, batch.segments, reason)
