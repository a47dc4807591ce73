#!/usr/bin/env python3
"""
External Accelerator Runtime Backend

Delegates tensor computation to an inference runtime that lives outside
the Python tensor graph: a native engine such as vLLM, or any other
session exposing the ``RuntimeSession`` interface. Tokenization stays
local so chunking and batching use the same vocabulary.

Runtime sessions report failures with their own exception types, which
the backend maps into the embedding error taxonomy:

    RuntimeLoadError        -> ModelLoadFailedError (run-fatal)
    RuntimeShapeError       -> DimensionMismatchError
    DeviceUnavailableError  -> InferenceFailedError (transient, retried)
    any other exception     -> InferenceFailedError
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np

from ..documents import Segment
from ..errors import (
    DimensionMismatchError,
    InferenceFailedError,
    ModelLoadFailedError,
    TokenizerUnavailableError,
)
from ..processors.tokenizers import HuggingFaceTokenCounter
from .embedders_base import EmbeddingBackend, EmbeddingConfig, TEXT_MODALITIES, pad_token_batch, segment_texts

logger = logging.getLogger(__name__)


class RuntimeLoadError(RuntimeError):
    """The runtime could not load the model or create a session."""


class RuntimeShapeError(RuntimeError):
    """The runtime rejected the input tensor shape."""


class DeviceUnavailableError(RuntimeError):
    """The accelerator is busy, out of memory or temporarily unreachable."""


class RuntimeSession(ABC):
    """A loaded model inside an external inference runtime."""

    #: Runtime compiled for fixed input shapes; inputs are padded to max length.
    static_shape: bool = False

    @abstractmethod
    def load(self) -> None:
        """Open the session. Raises RuntimeLoadError."""

    @abstractmethod
    def run(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
        """Return pooled vectors, shape (batch, dimension)."""

    @property
    def max_sequence_length(self) -> Optional[int]:
        return None

    def close(self) -> None:
        pass


class VLLMSession(RuntimeSession):
    """
    vLLM pooling engine in embedding mode.

    vLLM manages its own device memory and batching; rows are submitted as
    pre-tokenized prompts with padding stripped.
    """

    def __init__(self,
                 model_identifier: str,
                 max_model_len: Optional[int] = None,
                 dtype: str = "auto",
                 gpu_memory_utilization: float = 0.85,
                 tensor_parallel_size: int = 1):
        self.model_identifier = model_identifier
        self.max_model_len = max_model_len
        self.dtype = dtype
        self.gpu_memory_utilization = gpu_memory_utilization
        self.tensor_parallel_size = tensor_parallel_size
        self._llm = None

    def load(self) -> None:
        try:
            from vllm import LLM
        except ImportError as e:
            raise RuntimeLoadError(f"vLLM is not installed: {e}") from e

        kwargs = {
            "model": self.model_identifier,
            "task": "embed",
            "dtype": self.dtype,
            "trust_remote_code": True,
            "gpu_memory_utilization": self.gpu_memory_utilization,
            "tensor_parallel_size": self.tensor_parallel_size,
        }
        if self.max_model_len:
            kwargs["max_model_len"] = self.max_model_len

        try:
            self._llm = LLM(**kwargs)
        except (RuntimeError, ValueError, OSError) as e:
            raise RuntimeLoadError(str(e)) from e
        logger.info(f"vLLM embedding session ready for {self.model_identifier}")

    def run(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
        from vllm.inputs import TokensPrompt

        prompts = [
            TokensPrompt(prompt_token_ids=row[mask.astype(bool)].tolist())
            for row, mask in zip(input_ids, attention_mask)
        ]
        try:
            outputs = self._llm.embed(prompts, use_tqdm=False)
        except ValueError as e:
            # vLLM validates prompt length against max_model_len
            raise RuntimeShapeError(str(e)) from e
        except RuntimeError as e:
            if "out of memory" in str(e).lower():
                raise DeviceUnavailableError(str(e)) from e
            raise
        return np.asarray([output.outputs.embedding for output in outputs], dtype=np.float32)

    @property
    def max_sequence_length(self) -> Optional[int]:
        return self.max_model_len

    def close(self) -> None:
        self._llm = None


class AcceleratorEmbedder(EmbeddingBackend):
    """Embedding backend backed by an external runtime session."""

    accepted_modalities = TEXT_MODALITIES

    def __init__(self,
                 config: Optional[EmbeddingConfig] = None,
                 session: Optional[RuntimeSession] = None,
                 token_counter: Optional[HuggingFaceTokenCounter] = None):
        super().__init__(config)
        self.session = session or VLLMSession(self.config.model_name, max_model_len=self.config.max_seq_length)
        self._counter = token_counter
        self._loaded = False
        self._load_error: Optional[ModelLoadFailedError] = None
        self._lock = threading.Lock()

    def token_counter(self):
        if self._counter is None:
            with self._lock:
                if self._counter is None:
                    self._counter = HuggingFaceTokenCounter(self.config.model_name)
        return self._counter

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        if self._loaded:
            return
        with self._lock:
            if self._loaded:
                return
            if self._load_error is not None:
                raise self._load_error
            try:
                self.session.load()
                if self._counter is None:
                    self._counter = HuggingFaceTokenCounter(self.config.model_name)
            except (RuntimeLoadError, DeviceUnavailableError, TokenizerUnavailableError) as e:
                logger.error(f"Accelerator session failed to load {self.config.model_name}: {e}")
                self._load_error = ModelLoadFailedError(self.config.model_name, e)
                raise self._load_error from e
            self._loaded = True

    def _embed(self, segments: Sequence[Segment]) -> np.ndarray:
        self.load()
        counter = self.token_counter()
        sequences = counter.encode_batch(segment_texts(segments))
        input_ids, attention_mask = pad_token_batch(
            sequences,
            counter.pad_token_id,
            self.max_sequence_length,
            static_shape=self.session.static_shape,
        )

        try:
            return self.session.run(input_ids, attention_mask)
        except RuntimeShapeError as e:
            raise DimensionMismatchError(f"Runtime rejected input shape {input_ids.shape}: {e}") from e
        except DeviceUnavailableError as e:
            raise InferenceFailedError(f"accelerator unavailable: {e}", transient=True) from e
        except RuntimeLoadError as e:
            raise ModelLoadFailedError(self.config.model_name, e) from e
        except Exception as e:
            raise InferenceFailedError(f"{type(e).__name__}: {e}") from e

    @property
    def embedding_dimension(self) -> int:
        if self._dimension is None:
            raise RuntimeError("Embedding dimension is known after the first batch")
        return self._dimension

    @property
    def max_sequence_length(self) -> int:
        if self.config.max_seq_length:
            return self.config.max_seq_length
        if self.session.max_sequence_length:
            return self.session.max_sequence_length
        return self.token_counter().model_max_length or 512

    def close(self) -> None:
        self.session.close()
        self._loaded = False
