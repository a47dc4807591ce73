#!/usr/bin/env python3
"""
Embedder Factory

Factory for creating embedding backends from a model configuration.
Backends are registered under ``"<backend_kind>:<modality>"`` keys such as
``"local:text"`` or ``"accelerator:text"``.
"""

import logging
from typing import Any, Dict

from .embedders_base import EmbeddingBackend, EmbeddingConfig

logger = logging.getLogger(__name__)


class EmbedderFactory:
    """
    Factory for creating embedding backend instances.

    Backend classes register themselves on import; missing ones are imported
    on demand so optional stacks only load when configured.
    """

    # Registry of available backends
    _embedders: Dict[str, type] = {}

    @classmethod
    def register(cls, name: str, embedder_class: type):
        """
        Register a backend class.

        Args:
            name: Registry key, "<backend_kind>:<modality>"
            embedder_class: EmbeddingBackend subclass
        """
        cls._embedders[name] = embedder_class
        logger.info(f"Registered embedder: {name}")

    @staticmethod
    def registry_key(model_config) -> str:
        kind = getattr(model_config.backend_kind, "value", model_config.backend_kind)
        return f"{kind}:{model_config.modality}"

    @classmethod
    def create(cls, model_config, **kwargs) -> EmbeddingBackend:
        """
        Create a backend for a ``ModelConfig``.

        Args:
            model_config: docembed.framework.config.ModelConfig
            **kwargs: Extra constructor arguments (e.g. ``session`` for accelerator backends)

        Returns:
            Unloaded backend instance

        Raises:
            ValueError: If no backend is registered for the configuration
        """
        embedder_type = cls.registry_key(model_config)

        if embedder_type not in cls._embedders:
            cls._auto_register(embedder_type)

        if embedder_type not in cls._embedders:
            available = list(cls._embedders.keys())
            raise ValueError(
                f"No embedder registered for type '{embedder_type}'. "
                f"Available: {available}"
            )

        embedder_class = cls._embedders[embedder_type]
        logger.info(f"Creating {embedder_type} embedder for model: {model_config.model_identifier}")

        return embedder_class(EmbeddingConfig.from_model_config(model_config), **kwargs)

    @classmethod
    def _auto_register(cls, embedder_type: str):
        """Import and register a built-in backend."""
        if embedder_type == "local:text":
            from .embedders_local import LocalTransformerEmbedder
            cls.register("local:text", LocalTransformerEmbedder)
        elif embedder_type == "accelerator:text":
            from .embedders_accelerator import AcceleratorEmbedder
            cls.register("accelerator:text", AcceleratorEmbedder)
        elif embedder_type == "local:image":
            from .embedders_image import ClipImageEmbedder
            cls.register("local:image", ClipImageEmbedder)
        else:
            logger.warning(f"Unknown embedder type: {embedder_type}")

    @classmethod
    def list_available(cls) -> Dict[str, Any]:
        """
        List registered backends.

        Returns:
            Dictionary of backend keys with class and module names
        """
        return {
            name: {"class": embedder_class.__name__, "module": embedder_class.__module__}
            for name, embedder_class in cls._embedders.items()
        }
