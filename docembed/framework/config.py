"""
Configuration Management
========================

Hierarchical configuration system with support for:
- Base configuration (packaged configs/base.yaml)
- User configuration file
- .env file and DOCEMBED_* environment variables
- Runtime overrides
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load .env file if it exists
load_dotenv()


class BackendKind(str, Enum):
    LOCAL = "local"
    ACCELERATOR = "accelerator"


class Device(str, Enum):
    CPU = "cpu"
    GPU = "gpu"
    AUTO = "auto"


class ModelConfig(BaseModel):
    """Embedding model configuration."""
    model_identifier: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Hugging Face model id or local path",
    )
    backend_kind: BackendKind = Field(default=BackendKind.LOCAL, description="Tensor graph in-process or external runtime")
    modality: str = Field(default="text", description="Payload type accepted by the backend: text or image")
    device: Device = Field(default=Device.AUTO, description="Execution device")
    max_tokens: int = Field(default=512, gt=0, description="Chunk budget in model tokens")
    overlap: int = Field(default=0, ge=0, description="Tokens repeated at the start of each following chunk")
    max_batch_size: int = Field(default=32, gt=0, description="Segments per inference call")
    normalize: bool = Field(default=True, description="L2-normalize output vectors")
    pooling: str = Field(default="mean", description="Token pooling: mean or cls")
    use_fp16: bool = Field(default=True, description="Half precision on GPU")

    @model_validator(mode="after")
    def _check_overlap(self) -> "ModelConfig":
        if self.overlap >= self.max_tokens:
            raise ValueError(f"overlap ({self.overlap}) must be less than max_tokens ({self.max_tokens})")
        if self.pooling not in ("mean", "cls"):
            raise ValueError(f"Unknown pooling '{self.pooling}'")
        if self.modality not in ("text", "image"):
            raise ValueError(f"Unknown backend modality '{self.modality}'")
        return self


class AudioConfig(BaseModel):
    """Speech transcription used for audio documents."""
    model_identifier: str = Field(default="openai/whisper-tiny", description="Whisper checkpoint")
    chunk_length_s: float = Field(default=30.0, gt=0, description="Decoding window in seconds")
    language: Optional[str] = Field(default=None, description="Force a transcription language")
    no_speech_threshold: float = Field(default=0.6, description="Skip windows more likely silent than this")
    logprob_threshold: float = Field(default=-1.0, description="Retry hotter below this mean log probability")
    compression_ratio_threshold: float = Field(default=2.4, gt=0, description="Retry hotter above this gzip ratio")
    temperature: Tuple[float, ...] = Field(
        default=(0.0, 0.2, 0.4, 0.6, 0.8, 1.0),
        description="Decoding temperatures tried in order while a window fails the thresholds",
    )


class PipelineConfig(BaseModel):
    """Worker pools, queueing and retry policy."""
    preprocess_workers: int = Field(default=4, gt=0)
    inference_workers: int = Field(default=1, gt=0)
    max_in_flight_batches: int = Field(default=4, gt=0, description="Batches queued or executing at once")
    batch_wait_seconds: float = Field(default=0.05, ge=0, description="Wait window before sealing a partial batch")
    inference_timeout_seconds: float = Field(default=120.0, gt=0)
    retry_count: int = Field(default=2, ge=0, description="Retries for transient inference failures")
    retry_backoff_seconds: float = Field(default=0.5, ge=0)


class Config(BaseModel):
    """Main configuration object."""
    text_model: ModelConfig = Field(default_factory=ModelConfig)
    image_model: Optional[ModelConfig] = Field(default=None, description="Enables image documents when set")
    audio: AudioConfig = Field(default_factory=AudioConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging_level: str = Field(default="INFO", description="Logging level")
    logging_format: str = Field(default="json", description="Console log rendering: json or console")
    log_dir: Optional[str] = Field(default=None, description="Directory for log and metrics files")
    metrics_enabled: bool = Field(default=True, description="Enable metrics collection")

    @field_validator("image_model", mode="before")
    @classmethod
    def _image_modality(cls, value):
        if isinstance(value, dict):
            value = {"modality": "image", **value}
        return value


# (environment variable, config path, type)
_ENV_KEYS = [
    ("DOCEMBED_MODEL", ("text_model", "model_identifier"), str),
    ("DOCEMBED_BACKEND", ("text_model", "backend_kind"), str),
    ("DOCEMBED_DEVICE", ("text_model", "device"), str),
    ("DOCEMBED_MAX_TOKENS", ("text_model", "max_tokens"), int),
    ("DOCEMBED_OVERLAP", ("text_model", "overlap"), int),
    ("DOCEMBED_BATCH_SIZE", ("text_model", "max_batch_size"), int),
    ("DOCEMBED_IMAGE_MODEL", ("image_model", "model_identifier"), str),
    ("DOCEMBED_AUDIO_MODEL", ("audio", "model_identifier"), str),
    ("DOCEMBED_PREPROCESS_WORKERS", ("pipeline", "preprocess_workers"), int),
    ("DOCEMBED_INFERENCE_WORKERS", ("pipeline", "inference_workers"), int),
    ("DOCEMBED_INFERENCE_TIMEOUT", ("pipeline", "inference_timeout_seconds"), float),
    ("DOCEMBED_RETRY_COUNT", ("pipeline", "retry_count"), int),
    ("DOCEMBED_LOG_LEVEL", ("logging_level",), str),
    ("DOCEMBED_LOG_FORMAT", ("logging_format",), str),
    ("DOCEMBED_LOG_DIR", ("log_dir",), str),
]


class ConfigManager:
    """
    Configuration hierarchy (highest to lowest priority):
    1. Runtime overrides
    2. Environment variables (DOCEMBED_*), including those loaded from .env
    3. User config file
    4. Base config (configs/base.yaml)
    """

    @staticmethod
    def _load_yaml(file_path: Path) -> Dict[str, Any]:
        """Load YAML configuration file."""
        if not file_path.exists():
            return {}

        with open(file_path, 'r') as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _load_base() -> Dict[str, Any]:
        """Load base configuration."""
        base_path = Path(__file__).parent.parent / "configs" / "base.yaml"
        return ConfigManager._load_yaml(base_path)

    @staticmethod
    def _load_env() -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        for env_name, path, cast in _ENV_KEYS:
            raw = os.getenv(env_name)
            if not raw:
                continue
            target = config
            for key in path[:-1]:
                target = target.setdefault(key, {})
            target[path[-1]] = cast(raw)

        if os.getenv("DOCEMBED_NORMALIZE"):
            config.setdefault("text_model", {})["normalize"] = os.getenv("DOCEMBED_NORMALIZE").lower() == "true"
        if os.getenv("DOCEMBED_METRICS_ENABLED"):
            config["metrics_enabled"] = os.getenv("DOCEMBED_METRICS_ENABLED").lower() == "true"

        return config

    @staticmethod
    def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    @staticmethod
    def load(config_path: Optional[Union[str, Path]] = None, override: Optional[Dict] = None) -> Config:
        """
        Load configuration with hierarchy.

        Args:
            config_path: Optional user YAML file layered over the base config
            override: Runtime configuration overrides

        Returns:
            Loaded configuration object
        """
        config = ConfigManager._load_base()

        if config_path is not None:
            config = ConfigManager._deep_merge(config, ConfigManager._load_yaml(Path(config_path)))

        env_config = ConfigManager._load_env()
        config = ConfigManager._deep_merge(config, env_config)

        if override:
            config = ConfigManager._deep_merge(config, override)

        return Config(**config)
