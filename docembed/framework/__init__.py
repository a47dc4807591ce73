"""Configuration and metrics shared by all pipeline components."""

from .config import (  # noqa: F401
    AudioConfig,
    BackendKind,
    Config,
    ConfigManager,
    Device,
    ModelConfig,
    PipelineConfig,
)
from .metrics import MetricsCollector  # noqa: F401

__all__ = [
    "AudioConfig",
    "BackendKind",
    "Config",
    "ConfigManager",
    "Device",
    "ModelConfig",
    "PipelineConfig",
    "MetricsCollector",
]
