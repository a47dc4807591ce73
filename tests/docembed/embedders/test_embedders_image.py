from types import SimpleNamespace

import numpy as np
import pytest
import torch
from PIL import Image

from docembed.documents import Modality, Segment
from docembed.embedders import create_embedder, embedders_image, embedders_local
from docembed.embedders.embedders_image import ClipImageEmbedder
from docembed.errors import BackendError, ModelLoadFailedError
from docembed.framework.config import ModelConfig


class FakeProcessor:
    @classmethod
    def from_pretrained(cls, model_name):
        return cls()

    def __call__(self, images, return_tensors):
        # Mean colour of each image, as a (batch, 3) tensor
        pixels = [np.asarray(image, dtype=np.float32).reshape(-1, 3).mean(axis=0) for image in images]
        return {"pixel_values": torch.tensor(np.stack(pixels))}


class FakeClipModel(torch.nn.Module):
    loads = 0

    def __init__(self):
        super().__init__()
        self.config = SimpleNamespace(projection_dim=3)

    @classmethod
    def from_pretrained(cls, model_name):
        cls.loads += 1
        if model_name == "missing/model":
            raise OSError("no such model")
        return cls()

    def get_image_features(self, pixel_values):
        return pixel_values + 1.0


@pytest.fixture
def clip(monkeypatch):
    FakeClipModel.loads = 0
    monkeypatch.setattr(embedders_image, "CLIPProcessor", FakeProcessor)
    monkeypatch.setattr(embedders_image, "CLIPModel", FakeClipModel)
    return FakeClipModel


def image_segment(ordinal, colour):
    return Segment(
        document_id="album",
        ordinal=ordinal,
        modality=Modality.IMAGE,
        payload=Image.new("RGB", (2, 2), colour),
    )


def make_backend(model_identifier="openai/clip-vit-base-patch32"):
    config = ModelConfig(model_identifier=model_identifier, modality="image", device="cpu", max_batch_size=4)
    return create_embedder(config)


def test_factory_creates_image_backend(clip):
    backend = make_backend()

    assert isinstance(backend, ClipImageEmbedder)
    assert not backend.is_loaded
    assert backend.max_sequence_length == 1


def test_one_vector_per_image(clip):
    backend = make_backend()
    vectors = backend.embed_batch([image_segment(0, (255, 0, 0)), image_segment(1, (0, 0, 255))])

    assert vectors.shape == (2, 3)
    assert vectors.dtype == np.float32
    assert np.allclose(np.linalg.norm(vectors, axis=1), 1.0, atol=1e-5)
    assert vectors[0, 0] > vectors[0, 2]
    assert vectors[1, 2] > vectors[1, 0]
    assert backend.embedding_dimension == 3
    assert clip.loads == 1


def test_text_segments_are_rejected(clip):
    backend = make_backend()
    text = Segment(document_id="doc", ordinal=0, modality=Modality.TEXT, text="words")

    with pytest.raises(BackendError):
        backend.embed_batch([text])
    assert clip.loads == 0


def test_image_segment_without_payload_is_rejected(clip):
    backend = make_backend()
    with pytest.raises(BackendError):
        backend.embed_batch([Segment(document_id="doc", ordinal=0, modality=Modality.IMAGE)])


def test_load_failure_is_cached(clip):
    backend = make_backend("missing/model")

    for _ in range(2):
        with pytest.raises(ModelLoadFailedError):
            backend.embed_batch([image_segment(0, (1, 2, 3))])
    assert clip.loads == 1


def test_resolve_device(monkeypatch):
    monkeypatch.setattr(torch.cuda, "is_available", lambda: False)

    assert embedders_local.resolve_device("cpu") == "cpu"
    assert embedders_local.resolve_device("auto") == "cpu"
    with pytest.raises(RuntimeError):
        embedders_local.resolve_device("gpu")

    monkeypatch.setattr(torch.cuda, "is_available", lambda: True)
    assert embedders_local.resolve_device("auto") == "cuda"
    assert embedders_local.resolve_device("cuda:1") == "cuda:1"
