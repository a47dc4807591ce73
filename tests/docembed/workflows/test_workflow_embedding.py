import io
import json
import threading
from datetime import datetime

import numpy as np
import pytest
from PIL import Image

from conftest import HashingBackend
from docembed.dispatch import Adapter, ChunkingConfig, DocumentFormat, build_default_dispatch
from docembed.documents import Document, Modality
from docembed.embedders import IMAGE_MODALITIES
from docembed.errors import AssemblyError, ModelLoadFailedError
from docembed.extractors import AudioTranscriptExtractor
from docembed.framework.config import ModelConfig
from docembed.processors import reconstruct_text
from docembed.workflows import EmbeddingWorkflow, InMemorySink, JsonlSink, WorkflowConfig

PROSE = (
    "Retrieval systems embed passages once and search them many times. "
    "The quality of each passage vector depends on clean boundaries.\n\n"
    "Paragraphs are the preferred unit. Sentences come next, and raw tokens last.\n\n"
    "Every record keeps the character span of its passage."
)

GUIDE = "# Setup\nInstall the package first.\n\n## Usage\nCall the workflow with documents and read the sink.\n"


def documents():
    return [
        Document("prose", content=PROSE),
        Document("guide", content=GUIDE, format="markdown"),
        Document("page", content="<html><body><h1>Notice</h1><p>Office closed on Friday.</p></body></html>",
                 format="html"),
        Document("row", modality=Modality.STRUCTURED, content={"city": "Oslo", "country": "Norway"}),
        Document("mystery", path="archive/data.xyz"),
    ]


def make_workflow(config, sink, backend, **kwargs):
    return EmbeddingWorkflow(config=config, sink=sink, backends={"text": backend}, **kwargs)


def test_documents_become_ordered_records(config, sink, words, tmp_path):
    backend = HashingBackend(tokenizer=words)
    manifest = make_workflow(config, sink, backend).execute(documents(), show_progress=False)

    assert manifest.succeeded == ["prose", "guide", "page", "row"]
    assert list(manifest.failed) == ["mystery"]
    assert manifest.records_emitted == len(sink.records)
    assert manifest.segments_failed == 0
    assert not manifest.success

    prose = sink.records_for("prose")
    assert [r.ordinal for r in prose] == list(range(len(prose)))
    assert len(prose) > 1
    assert reconstruct_text(prose) == PROSE
    assert all(words.count(r.text) <= config.text_model.max_tokens for r in prose)
    assert all(r.metadata["format"] == "text" for r in prose)
    assert all(np.isclose(np.linalg.norm(r.vector), 1.0, atol=1e-5) for r in sink.records)

    row = sink.records_for("row")
    assert [(r.text, r.modality) for r in row] == [("city: Oslo; country: Norway", Modality.STRUCTURED)]

    assert (tmp_path / "logs" / "metrics.jsonl").exists()


def test_unsupported_document_emits_no_records(config, sink, hashing_backend):
    manifest = make_workflow(config, sink, hashing_backend).execute(
        [Document("mystery", path="archive/data.xyz")], show_progress=False
    )

    assert sink.records == []
    assert [(f.document_id, f.ordinal) for f in sink.failures] == [("mystery", None)]
    assert "Unsupported format '.xyz'" in manifest.failed["mystery"][0]
    assert hashing_backend.calls == []


def test_embedding_is_idempotent(config, words):
    backend = HashingBackend(tokenizer=words)
    first, second = InMemorySink(), InMemorySink()

    make_workflow(config, first, backend).execute(documents(), show_progress=False)
    make_workflow(config, second, backend).execute(documents(), show_progress=False)

    # Documents interleave differently between runs; compare by segment identity
    first_vectors = {(r.document_id, r.ordinal): r.vector for r in first.records}
    second_vectors = {(r.document_id, r.ordinal): r.vector for r in second.records}
    assert first_vectors.keys() == second_vectors.keys()
    for key, vector in first_vectors.items():
        assert np.array_equal(vector, second_vectors[key])


def test_failed_batch_only_fails_its_document(config, sink, words):
    backend = HashingBackend(tokenizer=words, batch_size=1, fail_documents={"bad"})
    manifest = make_workflow(config, sink, backend).execute(
        [Document("good", content="Healthy text."), Document("bad", content="Poisoned text.")],
        show_progress=False,
    )

    assert manifest.succeeded == ["good"]
    assert manifest.failed == {"bad": ["segment 0: poisoned batch"]}
    assert manifest.segments_failed == 1
    assert [r.document_id for r in sink.records] == ["good"]


def test_empty_document_fails_without_stopping_the_run(config, sink, hashing_backend):
    manifest = make_workflow(config, sink, hashing_backend).execute(
        [Document("empty", content="   "), Document("full", content="Some words.")],
        show_progress=False,
    )

    assert manifest.succeeded == ["full"]
    assert "no content extracted" in manifest.failed["empty"][0]


def test_model_load_failure_aborts_the_run(config, sink, words):
    backend = HashingBackend(tokenizer=words, load_error=True)

    with pytest.raises(ModelLoadFailedError):
        make_workflow(config, sink, backend).execute(documents(), show_progress=False)
    assert sink.records == []


def test_cancelled_run_reports_cancellation(config, sink, hashing_backend):
    cancel = threading.Event()
    cancel.set()
    manifest = make_workflow(config, sink, hashing_backend).execute(
        documents(), cancel_event=cancel, show_progress=False
    )

    assert manifest.cancelled
    assert not manifest.success
    assert manifest.failed == {"prose": ["cancelled"]}
    assert manifest.records_emitted == 0
    assert hashing_backend.calls == []


def test_duplicate_document_ids_are_skipped(config, sink, hashing_backend):
    manifest = make_workflow(config, sink, hashing_backend).execute(
        [Document("dup", content="First copy."), Document("dup", content="Second copy.")],
        show_progress=False,
    )

    assert manifest.succeeded == ["dup"]
    assert [r.text for r in sink.records] == ["First copy."]
    assert manifest.errors == ["Duplicate document id dup skipped"]


def test_chunks_fit_the_backend_sequence_limit(config, sink, words):
    backend = HashingBackend(tokenizer=words, max_seq_length=5)
    make_workflow(config, sink, backend).execute([Document("prose", content=PROSE)], show_progress=False)

    assert sink.records
    assert all(words.count(r.text) <= 5 for r in sink.records)
    assert reconstruct_text(sink.records) == PROSE


def test_audio_transcripts_are_embedded_with_timestamps(config, sink, hashing_backend):
    def transcriber(audio, **kwargs):
        return {"chunks": [
            {"text": "Welcome to the meeting.", "timestamp": (0.0, 2.0)},
            {"text": "", "timestamp": (2.0, 4.0)},
            {"text": "First item is the budget.", "timestamp": (4.0, 6.5)},
        ]}

    dispatch = build_default_dispatch(config)
    dispatch.register(Adapter(
        DocumentFormat.AUDIO,
        AudioTranscriptExtractor(transcriber=transcriber),
        ChunkingConfig(max_tokens=12),
        "text",
    ))
    workflow = make_workflow(config, sink, hashing_backend, dispatch=dispatch)
    document = Document("meeting", modality=Modality.AUDIO, content={"raw": np.zeros(16), "sampling_rate": 16000})
    manifest = workflow.execute([document], show_progress=False)

    assert manifest.succeeded == ["meeting"]
    assert [(r.text, r.metadata["start_time"], r.modality) for r in sink.records] == [
        ("Welcome to the meeting.", 0.0, Modality.AUDIO),
        ("First item is the budget.", 4.0, Modality.AUDIO),
    ]


def test_images_use_the_image_backend(config, sink, hashing_backend):
    class ImageHashingBackend(HashingBackend):
        accepted_modalities = IMAGE_MODALITIES

    config.image_model = ModelConfig(model_identifier="openai/clip-vit-base-patch32", modality="image")
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), (10, 20, 30)).save(buffer, format="PNG")

    image_backend = ImageHashingBackend()
    workflow = EmbeddingWorkflow(
        config=config,
        sink=sink,
        backends={"text": hashing_backend, "image": image_backend},
    )
    manifest = workflow.execute(
        [Document("photo", modality=Modality.IMAGE, content=buffer.getvalue()), Document("caption", content="A photo.")],
        show_progress=False,
    )

    assert manifest.succeeded == ["photo", "caption"]
    photo = sink.records_for("photo")
    assert [(r.ordinal, r.modality, r.text) for r in photo] == [(0, Modality.IMAGE, None)]
    assert len(image_backend.calls) == 1
    assert all(key[0] == "caption" for call in hashing_backend.calls for key in call)


def test_manifest_is_saved_as_json(config, sink, hashing_backend, tmp_path):
    manifest = make_workflow(config, sink, hashing_backend).execute(documents(), show_progress=False)
    saved = tmp_path / "logs" / f"embedding_{manifest.run_id}.json"
    payload = json.loads(saved.read_text())

    assert payload["succeeded"] == manifest.succeeded
    assert payload["records_emitted"] == manifest.records_emitted
    assert payload["run_id"] == manifest.run_id
    assert payload["failed"] == {"mystery": manifest.failed["mystery"]}


def test_workflow_info(config, sink, hashing_backend):
    workflow = make_workflow(config, sink, hashing_backend)

    assert workflow.validate_inputs()
    assert workflow.get_workflow_info() == {
        "name": "embedding",
        "class": "EmbeddingWorkflow",
        "supports_streaming": True,
    }


def test_manifest_saving_can_be_disabled(config, sink, hashing_backend, tmp_path):
    workflow = make_workflow(
        config, sink, hashing_backend,
        workflow_config=WorkflowConfig(name="quiet", show_progress=False, save_manifest=False),
    )
    manifest = workflow.execute([Document("doc", content="Some words.")])

    assert manifest.workflow_name == "quiet"
    assert manifest.success_rate == 100.0
    assert not list((tmp_path / "logs").glob("quiet_*.json"))


def test_jsonl_sink_writes_non_json_metadata_as_strings(config, hashing_backend, tmp_path):
    config.pipeline.inference_workers = 1
    sink = JsonlSink(tmp_path / "out" / "records.jsonl")
    stamped = [
        Document(f"note-{i}", content=f"Meeting note number {i}.", metadata={"timestamp": datetime(2024, 1, 1)})
        for i in range(6)
    ]
    try:
        manifest = make_workflow(config, sink, hashing_backend).execute(stamped, show_progress=False)
    finally:
        sink.close()

    lines = [json.loads(line) for line in sink.path.read_text().splitlines()]
    assert manifest.success
    assert manifest.records_emitted == 6
    assert {line["document_id"] for line in lines} == {f"note-{i}" for i in range(6)}
    assert all(line["metadata"]["timestamp"] == "2024-01-01 00:00:00" for line in lines)


def test_sink_failure_aborts_instead_of_hanging(config, hashing_backend):
    class BrokenSink(InMemorySink):
        def accept(self, record):
            raise OSError("disk full")

    outcome = {}

    def run():
        try:
            make_workflow(config, BrokenSink(), hashing_backend).execute(documents(), show_progress=False)
        except AssemblyError as e:
            outcome["error"] = e

    runner = threading.Thread(target=run, daemon=True)
    runner.start()
    runner.join(timeout=30)

    assert not runner.is_alive()
    assert "disk full" in str(outcome["error"])
