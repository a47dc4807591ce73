import hashlib
import re
import threading
import time
from typing import Callable, Iterable, Optional, Sequence

import numpy as np
import pytest

from docembed.documents import Modality, Segment
from docembed.embedders.embedders_base import EmbeddingBackend, EmbeddingConfig
from docembed.errors import InferenceFailedError, ModelLoadFailedError
from docembed.framework.config import Config, ModelConfig, PipelineConfig
from docembed.processors.tokenizers import RegexTokenCounter
from docembed.workflows.assembler import InMemorySink


class HashingBackend(EmbeddingBackend):
    """Deterministic backend: each vector is derived from a hash of the segment content."""

    def __init__(self,
                 dimension: int = 8,
                 batch_size: int = 4,
                 tokenizer=None,
                 max_seq_length: int = 512,
                 fail_documents: Iterable[str] = (),
                 transient_failures: int = 0,
                 delay: Optional[Callable[[Sequence[Segment]], float]] = None,
                 load_error: bool = False):
        super().__init__(EmbeddingConfig(model_name="hashing", device="cpu", batch_size=batch_size))
        self.dimension = dimension
        self.tokenizer = tokenizer
        self.max_seq_length = max_seq_length
        self.fail_documents = set(fail_documents)
        self.transient_failures = transient_failures
        self.delay = delay
        self.load_error = load_error
        self.calls = []
        self._calls_lock = threading.Lock()

    def token_counter(self):
        return self.tokenizer

    def _embed(self, segments):
        with self._calls_lock:
            self.calls.append([segment.key for segment in segments])
            transient = self.transient_failures > 0
            if transient:
                self.transient_failures -= 1

        if self.load_error:
            raise ModelLoadFailedError("hashing", OSError("weights not found"))
        if self.delay is not None:
            time.sleep(self.delay(segments))
        if transient:
            raise InferenceFailedError("device busy", transient=True)
        if any(segment.document_id in self.fail_documents for segment in segments):
            raise InferenceFailedError("poisoned batch")
        return np.stack([self.vector_for(segment) for segment in segments])

    def vector_for(self, segment: Segment) -> np.ndarray:
        content = segment.text if segment.text is not None else repr(segment.payload)
        digest = hashlib.sha256(content.encode("utf-8")).digest()
        return np.frombuffer(digest, dtype=np.uint8)[:self.dimension].astype(np.float32) + 1.0

    @property
    def embedding_dimension(self) -> int:
        return self.dimension

    @property
    def max_sequence_length(self) -> int:
        return self.max_seq_length


class WhitespaceTokenizerStub:
    """Stands in for a fast Hugging Face tokenizer: one id per whitespace-separated word, [CLS]=1 and [SEP]=2."""

    is_fast = True
    pad_token_id = 0

    def __init__(self, model_max_length: int = 16):
        self.model_max_length = model_max_length

    def _encode(self, text: str, add_special_tokens: bool):
        spans = [m.span() for m in re.finditer(r"\S+", text)]
        ids = [10 + sum(map(ord, text[start:end])) % 1000 for start, end in spans]
        if add_special_tokens:
            ids = [1] + ids + [2]
            spans = [(0, 0)] + spans + [(0, 0)]
        return ids, spans

    def __call__(self, text, add_special_tokens=True, return_offsets_mapping=False, verbose=True):
        if isinstance(text, list):
            return {"input_ids": [self._encode(t, add_special_tokens)[0] for t in text]}
        ids, spans = self._encode(text, add_special_tokens)
        encoding = {"input_ids": ids}
        if return_offsets_mapping:
            encoding["offset_mapping"] = spans
        return encoding

    def num_special_tokens_to_add(self, pair=False):
        return 2


def make_segments(document_id: str, count: int, modality: Modality = Modality.TEXT):
    return [
        Segment(document_id=document_id, ordinal=i, modality=modality, text=f"{document_id} segment {i}", token_count=3)
        for i in range(count)
    ]


@pytest.fixture
def words():
    return RegexTokenCounter.words()


@pytest.fixture
def sentences():
    return RegexTokenCounter.sentences()


@pytest.fixture
def sink():
    return InMemorySink()


@pytest.fixture
def hashing_backend(words):
    return HashingBackend(tokenizer=words)


@pytest.fixture
def config(tmp_path):
    return Config(
        text_model=ModelConfig(model_identifier="hashing", max_tokens=12, overlap=2, max_batch_size=4),
        pipeline=PipelineConfig(
            preprocess_workers=2,
            inference_workers=2,
            max_in_flight_batches=2,
            batch_wait_seconds=0.01,
            inference_timeout_seconds=5.0,
            retry_count=1,
            retry_backoff_seconds=0.01,
        ),
        log_dir=str(tmp_path / "logs"),
    )
