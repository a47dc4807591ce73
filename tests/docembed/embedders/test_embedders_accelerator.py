import numpy as np
import pytest

from conftest import WhitespaceTokenizerStub, make_segments
from docembed.embedders import EmbeddingConfig
from docembed.embedders.embedders_accelerator import (
    AcceleratorEmbedder,
    DeviceUnavailableError,
    RuntimeLoadError,
    RuntimeSession,
    RuntimeShapeError,
)
from docembed.errors import DimensionMismatchError, InferenceFailedError, ModelLoadFailedError
from docembed.processors import HuggingFaceTokenCounter


class ScriptedSession(RuntimeSession):
    """Runtime session that fails with a preset error or returns row sums."""

    def __init__(self, run_error=None, load_error=None, static_shape=False):
        self.run_error = run_error
        self.load_error = load_error
        self.static_shape = static_shape
        self.loads = 0
        self.shapes = []

    def load(self):
        self.loads += 1
        if self.load_error is not None:
            raise self.load_error

    def run(self, input_ids, attention_mask):
        self.shapes.append(input_ids.shape)
        if self.run_error is not None:
            raise self.run_error
        features = np.stack([input_ids.sum(axis=1), attention_mask.sum(axis=1), np.ones(len(input_ids))], axis=1)
        return features.astype(np.float32)

    @property
    def max_sequence_length(self):
        return 12


def make_backend(session):
    counter = HuggingFaceTokenCounter("stub", tokenizer=WhitespaceTokenizerStub())
    return AcceleratorEmbedder(
        EmbeddingConfig(model_name="stub", batch_size=4),
        session=session,
        token_counter=counter,
    )


def test_vectors_come_from_the_session():
    session = ScriptedSession()
    backend = make_backend(session)
    vectors = backend.embed_batch(make_segments("doc", 2))

    assert vectors.shape == (2, 3)
    assert session.loads == 1
    assert backend.embedding_dimension == 3
    assert backend.chunk_budget(512) == 10


def test_static_shape_pads_to_sequence_limit():
    session = ScriptedSession(static_shape=True)
    make_backend(session).embed_batch(make_segments("doc", 2))

    assert session.shapes == [(2, 12)]


def test_shape_errors_map_to_dimension_mismatch():
    backend = make_backend(ScriptedSession(run_error=RuntimeShapeError("expected [8, 128]")))
    with pytest.raises(DimensionMismatchError):
        backend.embed_batch(make_segments("doc", 1))


def test_device_errors_are_transient():
    backend = make_backend(ScriptedSession(run_error=DeviceUnavailableError("queue full")))
    with pytest.raises(InferenceFailedError) as excinfo:
        backend.embed_batch(make_segments("doc", 1))
    assert excinfo.value.transient


def test_other_runtime_errors_are_permanent():
    backend = make_backend(ScriptedSession(run_error=KeyError("output")))
    with pytest.raises(InferenceFailedError) as excinfo:
        backend.embed_batch(make_segments("doc", 1))
    assert not excinfo.value.transient


def test_load_errors_are_fatal_and_cached():
    session = ScriptedSession(load_error=RuntimeLoadError("engine missing"))
    backend = make_backend(session)

    with pytest.raises(ModelLoadFailedError):
        backend.embed_batch(make_segments("doc", 1))
    with pytest.raises(ModelLoadFailedError):
        backend.embed_batch(make_segments("doc", 1))
    assert session.loads == 1
