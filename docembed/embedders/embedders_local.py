#!/usr/bin/env python3
"""
Local Tensor-Graph Backend

Runs a Hugging Face encoder in-process with PyTorch. The tokenizer and
weights are loaded lazily on first use, exactly once per backend instance,
and held as an immutable ``LoadedModel`` shared by every inference worker.
A failed load is remembered and re-raised; weights are never reloaded
implicitly.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np
import torch
from transformers import AutoModel

from ..documents import Segment
from ..errors import InferenceFailedError, ModelLoadFailedError, TokenizerUnavailableError
from ..processors.tokenizers import HuggingFaceTokenCounter
from .embedders_base import EmbeddingBackend, EmbeddingConfig, TEXT_MODALITIES, pad_token_batch, segment_texts

logger = logging.getLogger(__name__)

DEFAULT_MAX_SEQ_LENGTH = 512


@dataclass(frozen=True)
class LoadedModel:
    """Weights placed on their device, ready for inference."""
    model: Any
    device: str
    dtype: Any
    dimension: int


def resolve_device(requested: str) -> str:
    """Map a cpu/gpu/auto setting to a torch device string."""
    requested = (requested or "auto").lower()
    if requested == "cpu":
        return "cpu"
    if requested in ("gpu", "cuda") or requested.startswith("cuda:"):
        if not torch.cuda.is_available():
            raise RuntimeError("GPU requested but CUDA is not available")
        return "cuda" if requested == "gpu" else requested
    return "cuda" if torch.cuda.is_available() else "cpu"


class LocalTransformerEmbedder(EmbeddingBackend):
    """
    Mean- or CLS-pooled sentence embeddings from a transformers encoder.

    Works with any ``AutoModel`` checkpoint exposing ``last_hidden_state``,
    e.g. sentence-transformers, BGE or E5 models.
    """

    accepted_modalities = TEXT_MODALITIES

    def __init__(self, config: Optional[EmbeddingConfig] = None,
                 token_counter: Optional[HuggingFaceTokenCounter] = None):
        super().__init__(config)
        self._counter = token_counter
        self._loaded: Optional[LoadedModel] = None
        self._load_error: Optional[ModelLoadFailedError] = None
        self._lock = threading.Lock()

    def token_counter(self) -> HuggingFaceTokenCounter:
        if self._counter is None:
            with self._lock:
                if self._counter is None:
                    self._counter = HuggingFaceTokenCounter(self.config.model_name)
        return self._counter

    @property
    def is_loaded(self) -> bool:
        return self._loaded is not None

    def load(self) -> LoadedModel:
        """
        Load tokenizer and weights once.

        Raises:
            ModelLoadFailedError: the checkpoint, device or tokenizer is unavailable.
                The same error is raised again on every later call.
        """
        if self._loaded is not None:
            return self._loaded
        with self._lock:
            if self._loaded is not None:
                return self._loaded
            if self._load_error is not None:
                raise self._load_error

            try:
                if self._counter is None:
                    self._counter = HuggingFaceTokenCounter(self.config.model_name)
                device = resolve_device(self.config.device)
                dtype = torch.float16 if (self.config.use_fp16 and device.startswith("cuda")) else torch.float32

                logger.info(f"Loading {self.config.model_name} on {device} with dtype={dtype}")
                model = AutoModel.from_pretrained(self.config.model_name, torch_dtype=dtype)
                if device != "cpu":
                    model = model.to(device)
                model.eval()
                dimension = int(model.config.hidden_size)
            except (OSError, ValueError, RuntimeError, ImportError, TokenizerUnavailableError) as e:
                logger.error(f"Failed to load {self.config.model_name}: {e}")
                self._load_error = ModelLoadFailedError(self.config.model_name, e)
                raise self._load_error from e

            self._loaded = LoadedModel(model=model, device=device, dtype=dtype, dimension=dimension)
            logger.info(f"Model loaded: dimension={dimension}, max_sequence_length={self.max_sequence_length}")
            return self._loaded

    def _embed(self, segments: Sequence[Segment]) -> np.ndarray:
        loaded = self.load()
        counter = self.token_counter()

        sequences = counter.encode_batch(segment_texts(segments))
        input_ids, attention_mask = pad_token_batch(sequences, counter.pad_token_id, self.max_sequence_length)

        try:
            ids_tensor = torch.from_numpy(input_ids).to(loaded.device)
            mask_tensor = torch.from_numpy(attention_mask).to(loaded.device)
            with torch.no_grad():
                outputs = loaded.model(input_ids=ids_tensor, attention_mask=mask_tensor)
                hidden = outputs.last_hidden_state if hasattr(outputs, "last_hidden_state") else outputs[0]
                pooled = self._pool(hidden, mask_tensor)
            return pooled.float().cpu().numpy()
        except torch.cuda.OutOfMemoryError as e:
            if torch.cuda.is_available():
                torch.cuda.empty_cache()
            raise InferenceFailedError("CUDA out of memory", transient=True) from e
        except RuntimeError as e:
            raise InferenceFailedError(str(e)) from e

    def _pool(self, hidden: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
        if self.config.pooling == "cls":
            return hidden[:, 0]
        weights = mask.unsqueeze(-1).to(hidden.dtype)
        summed = (hidden * weights).sum(dim=1)
        counts = weights.sum(dim=1).clamp(min=1e-9)
        return summed / counts

    @property
    def embedding_dimension(self) -> int:
        return self.load().dimension

    @property
    def max_sequence_length(self) -> int:
        if self.config.max_seq_length:
            return self.config.max_seq_length
        return self.token_counter().model_max_length or DEFAULT_MAX_SEQ_LENGTH
