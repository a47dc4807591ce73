#!/usr/bin/env python3
"""
Base Embedding Backend Interface

Defines the contract for all embedding backends. A backend maps a batch of
Segments to a 2-D array of vectors, one row per segment in input order,
whatever executes the model: an in-process tensor graph or an external
accelerator runtime.

The base class owns the parts of the contract every backend shares:
batch-size and modality validation, padding of token sequences to a
uniform shape, output shape checks, a constant vector dimension for the
lifetime of the instance, and optional L2 normalization.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from ..documents import Modality, Segment
from ..errors import BackendError, BatchSizeExceededError, DimensionMismatchError

logger = logging.getLogger(__name__)

TEXT_MODALITIES = frozenset({Modality.TEXT, Modality.AUDIO, Modality.STRUCTURED})
IMAGE_MODALITIES = frozenset({Modality.IMAGE})


@dataclass
class EmbeddingConfig:
    """Configuration for embedding backends."""
    model_name: str
    device: str = "auto"
    batch_size: int = 32
    max_seq_length: Optional[int] = None
    use_fp16: bool = True
    normalize: bool = True
    pooling: str = "mean"

    @classmethod
    def from_model_config(cls, model_config) -> "EmbeddingConfig":
        """Build from a ``docembed.framework.config.ModelConfig``."""
        return cls(
            model_name=model_config.model_identifier,
            device=getattr(model_config.device, "value", model_config.device),
            batch_size=model_config.max_batch_size,
            use_fp16=model_config.use_fp16,
            normalize=model_config.normalize,
            pooling=model_config.pooling,
        )


def pad_token_batch(sequences: Sequence[Sequence[int]],
                    pad_token_id: int,
                    max_length: int,
                    static_shape: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pad token id sequences to a uniform (batch, length) shape.

    Parameters:
        sequences: Token ids per segment, special tokens included.
        pad_token_id: Id written into padding positions.
        max_length: Model context length; longer sequences are rejected.
        static_shape: Pad to ``max_length`` instead of the longest sequence,
            for runtimes compiled for a fixed input shape.

    Returns:
        (input_ids, attention_mask), both int64 arrays.

    Raises:
        DimensionMismatchError: a sequence is longer than ``max_length``.
    """
    lengths = [len(seq) for seq in sequences]
    longest = max(lengths, default=0)
    if longest > max_length:
        raise DimensionMismatchError(
            f"Sequence of {longest} tokens exceeds max sequence length {max_length}",
            expected=max_length,
            actual=longest,
        )

    width = max_length if static_shape else longest
    input_ids = np.full((len(sequences), width), pad_token_id, dtype=np.int64)
    attention_mask = np.zeros((len(sequences), width), dtype=np.int64)
    for row, seq in enumerate(sequences):
        input_ids[row, :len(seq)] = seq
        attention_mask[row, :len(seq)] = 1
    return input_ids, attention_mask


def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Scale each row to unit L2 norm."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    return (vectors / (norms + 1e-8)).astype(np.float32)


class EmbeddingBackend(ABC):
    """
    Abstract base class for all embedding backends.

    Subclasses implement ``_embed`` and the size properties; callers use
    ``embed_batch``. Backends are shared by all inference workers of a run,
    so implementations must load their weights at most once and be safe to
    call from several threads.
    """

    accepted_modalities: FrozenSet[Modality] = TEXT_MODALITIES

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize the backend with an EmbeddingConfig.

        If no config is provided, a default EmbeddingConfig with model_name="default" is used.
        """
        self.config = config or EmbeddingConfig(model_name="default")
        self._dimension: Optional[int] = None
        self._dimension_lock = threading.Lock()

    def embed_batch(self, segments: Sequence[Segment]) -> np.ndarray:
        """
        Embed a homogeneous batch of segments.

        Returns a float32 array of shape (len(segments), embedding_dimension);
        row ``i`` is the vector of ``segments[i]``.

        Raises:
            BatchSizeExceededError: more segments than the configured batch size.
            BackendError: mixed or unsupported modalities.
            DimensionMismatchError: input or output shape violates the contract.
            ModelLoadFailedError: weights or runtime could not be loaded.
            InferenceFailedError: the forward pass failed.
        """
        if not segments:
            return np.empty((0, self._dimension or 0), dtype=np.float32)
        if len(segments) > self.config.batch_size:
            raise BatchSizeExceededError(len(segments), self.config.batch_size)

        modalities = {segment.modality for segment in segments}
        if len(modalities) > 1:
            raise BackendError(f"Batch mixes modalities: {sorted(m.value for m in modalities)}")
        modality = modalities.pop()
        if modality not in self.accepted_modalities:
            raise BackendError(f"{self.__class__.__name__} does not accept {modality.value} segments")

        vectors = np.asarray(self._embed(segments), dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != len(segments):
            raise DimensionMismatchError(
                f"Backend returned shape {vectors.shape} for {len(segments)} segments",
                expected=len(segments),
                actual=vectors.shape[0] if vectors.ndim else None,
            )
        self._check_dimension(vectors.shape[1])

        if self.config.normalize:
            vectors = l2_normalize(vectors)
        return vectors

    def _check_dimension(self, dimension: int):
        with self._dimension_lock:
            if self._dimension is None:
                self._dimension = dimension
            elif dimension != self._dimension:
                raise DimensionMismatchError(
                    f"Vector dimension changed from {self._dimension} to {dimension}",
                    expected=self._dimension,
                    actual=dimension,
                )

    @abstractmethod
    def _embed(self, segments: Sequence[Segment]) -> np.ndarray:
        """Compute raw vectors for a validated, non-empty, single-modality batch."""

    def load(self) -> None:
        """Load weights or open the runtime session now instead of on first use."""

    @property
    def is_loaded(self) -> bool:
        return True

    def token_counter(self):
        """
        Tokenizer of the model vocabulary, used to size chunks.

        Returns None for backends whose inputs are not token sequences.
        """
        return None

    @property
    @abstractmethod
    def embedding_dimension(self) -> int:
        """Number of dimensions in each embedding vector."""

    @property
    @abstractmethod
    def max_sequence_length(self) -> int:
        """Maximum number of tokens, special tokens included, accepted for one segment."""

    def chunk_budget(self, max_tokens: int) -> int:
        """Largest segment size in tokens that fits this backend, capped at ``max_tokens``."""
        counter = self.token_counter()
        special = counter.special_tokens_count if counter is not None else 0
        return max(1, min(max_tokens, self.max_sequence_length - special))

    def close(self) -> None:
        """Release runtime resources."""

    def get_model_info(self) -> Dict[str, Any]:
        """
        Return a dictionary of metadata describing the backend and its configured model.

        The dimension is the one observed on produced vectors, None before the first batch.
        """
        info: Dict[str, Any] = {
            "backend": self.__class__.__name__,
            "model_name": self.config.model_name,
            "device": self.config.device,
            "batch_size": self.config.batch_size,
            "normalize": self.config.normalize,
            "modalities": sorted(m.value for m in self.accepted_modalities),
            "embedding_dimension": self._dimension,
        }
        if self.is_loaded:
            info["max_sequence_length"] = self.max_sequence_length
        return info


def segment_texts(segments: Sequence[Segment]) -> List[str]:
    """Texts of textual segments, in order."""
    texts = []
    for segment in segments:
        if segment.text is None:
            raise BackendError(f"Segment {segment.key} has no text")
        texts.append(segment.text)
    return texts
