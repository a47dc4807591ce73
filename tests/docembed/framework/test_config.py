import os

import pytest
from pydantic import ValidationError

from docembed.framework.config import BackendKind, Config, ConfigManager, Device, ModelConfig


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in list(os.environ):
        if name.startswith("DOCEMBED_"):
            monkeypatch.delenv(name)


def test_base_config_is_packaged():
    config = ConfigManager.load()

    assert config.text_model.max_tokens == 256
    assert config.text_model.overlap == 32
    assert config.text_model.backend_kind is BackendKind.LOCAL
    assert config.pipeline.retry_count == 2
    assert config.image_model is None


def test_user_file_overrides_base(tmp_path):
    path = tmp_path / "docembed.yaml"
    path.write_text("text_model:\n  max_tokens: 128\npipeline:\n  inference_workers: 2\n")
    config = ConfigManager.load(path)

    assert config.text_model.max_tokens == 128
    assert config.text_model.overlap == 32
    assert config.pipeline.inference_workers == 2


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "docembed.yaml"
    path.write_text("text_model:\n  max_tokens: 128\n")
    monkeypatch.setenv("DOCEMBED_MAX_TOKENS", "64")
    monkeypatch.setenv("DOCEMBED_DEVICE", "cpu")
    monkeypatch.setenv("DOCEMBED_NORMALIZE", "false")

    config = ConfigManager.load(path)

    assert config.text_model.max_tokens == 64
    assert config.text_model.device is Device.CPU
    assert config.text_model.normalize is False


def test_runtime_override_wins(monkeypatch):
    monkeypatch.setenv("DOCEMBED_MAX_TOKENS", "64")
    config = ConfigManager.load(override={"text_model": {"max_tokens": 100, "overlap": 10}})

    assert config.text_model.max_tokens == 100
    assert config.text_model.overlap == 10


def test_image_model_from_environment_is_an_image_backend(monkeypatch):
    monkeypatch.setenv("DOCEMBED_IMAGE_MODEL", "openai/clip-vit-base-patch32")
    config = ConfigManager.load()

    assert config.image_model.model_identifier == "openai/clip-vit-base-patch32"
    assert config.image_model.modality == "image"


def test_missing_user_file_is_ignored(tmp_path):
    assert ConfigManager.load(tmp_path / "absent.yaml").text_model.max_tokens == 256


def test_overlap_must_be_below_budget():
    with pytest.raises(ValidationError):
        ModelConfig(max_tokens=16, overlap=16)


@pytest.mark.parametrize("field,value", [("max_tokens", 0), ("max_batch_size", 0), ("pooling", "max")])
def test_invalid_model_settings_are_rejected(field, value):
    with pytest.raises(ValidationError):
        ModelConfig(**{field: value})


def test_invalid_pipeline_settings_are_rejected():
    with pytest.raises(ValidationError):
        Config(pipeline={"inference_workers": 0})
