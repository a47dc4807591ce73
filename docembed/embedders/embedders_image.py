#!/usr/bin/env python3
"""
Image Backend

CLIP vision tower through transformers. Each image segment carries a PIL
image as its payload; the processor resizes and normalizes every image to
the model's fixed pixel shape, so one batch is one uniform tensor.
"""

import logging
import threading
from typing import Optional, Sequence

import numpy as np
import torch
from PIL import Image
from transformers import CLIPModel, CLIPProcessor

from ..documents import Segment
from ..errors import BackendError, InferenceFailedError, ModelLoadFailedError
from .embedders_base import EmbeddingBackend, EmbeddingConfig, IMAGE_MODALITIES
from .embedders_local import resolve_device

logger = logging.getLogger(__name__)


class ClipImageEmbedder(EmbeddingBackend):
    """Image embeddings from ``CLIPModel.get_image_features``."""

    accepted_modalities = IMAGE_MODALITIES

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        super().__init__(config or EmbeddingConfig(model_name="openai/clip-vit-base-patch32"))
        self._model = None
        self._processor = None
        self._device = "cpu"
        self._load_error: Optional[ModelLoadFailedError] = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            if self._load_error is not None:
                raise self._load_error
            try:
                device = resolve_device(self.config.device)
                processor = CLIPProcessor.from_pretrained(self.config.model_name)
                model = CLIPModel.from_pretrained(self.config.model_name)
                if device != "cpu":
                    model = model.to(device)
                model.eval()
            except (OSError, ValueError, RuntimeError, ImportError) as e:
                logger.error(f"Failed to load image model {self.config.model_name}: {e}")
                self._load_error = ModelLoadFailedError(self.config.model_name, e)
                raise self._load_error from e
            self._processor = processor
            self._device = device
            self._model = model
            logger.info(f"Loaded image model {self.config.model_name} on {device}")

    def _embed(self, segments: Sequence[Segment]) -> np.ndarray:
        self.load()
        images = []
        for segment in segments:
            if not isinstance(segment.payload, Image.Image):
                raise BackendError(f"Segment {segment.key} has no image payload")
            images.append(segment.payload.convert("RGB"))

        try:
            inputs = self._processor(images=images, return_tensors="pt")
            pixel_values = inputs["pixel_values"].to(self._device)
            with torch.no_grad():
                features = self._model.get_image_features(pixel_values=pixel_values)
            if hasattr(features, "pooler_output"):
                features = features.pooler_output
            return features.float().cpu().numpy()
        except torch.cuda.OutOfMemoryError as e:
            raise InferenceFailedError("CUDA out of memory", transient=True) from e
        except RuntimeError as e:
            raise InferenceFailedError(str(e)) from e

    @property
    def embedding_dimension(self) -> int:
        self.load()
        return int(self._model.config.projection_dim)

    @property
    def max_sequence_length(self) -> int:
        # One image is one input unit
        return 1
