#!/usr/bin/env python3
"""
Media Extractors

Images are decoded with Pillow and passed through as payloads: one image is
one segment. Audio is transcribed with a Whisper model into time-stamped
utterances; each utterance becomes a text section carrying its start and
end time, and silent windows (empty transcriptions) are dropped.
"""

import io
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
from PIL import Image

from ..documents import Document
from ..errors import ExtractionError
from .extractors_base import ExtractionResult, ExtractorBase, ExtractorConfig, document_source

logger = logging.getLogger(__name__)


class ImageExtractor(ExtractorBase):
    """Decode an image file or byte string into an RGB PIL image."""

    def _extract(self, document: Document) -> ExtractionResult:
        image = Image.open(io.BytesIO(self.read_bytes(document)))
        image.load()
        source_format = image.format
        image = image.convert("RGB")
        return ExtractionResult(
            media=[image],
            metadata={"format": "image", "image_format": source_format, "width": image.width, "height": image.height},
        )

    @property
    def supported_formats(self) -> List[str]:
        return [".png", ".jpg", ".jpeg", ".gif", ".bmp", ".tiff", ".webp"]


Transcriber = Callable[[Any], Mapping[str, Any]]


class AudioTranscriptExtractor(ExtractorBase):
    """
    Speech-to-text with the transformers automatic-speech-recognition pipeline.

    Audio is decoded in ``chunk_length_s`` windows with timestamps. A window
    whose decoding looks degenerate (too repetitive or too unlikely) is decoded
    again at the next ``temperature``; windows judged silent are skipped. Documents
    may carry a path, encoded bytes (decoded with ffmpeg by transformers) or
    a mapping ``{"raw": np.ndarray, "sampling_rate": int}``.
    """

    def __init__(self,
                 model_identifier: str = "openai/whisper-tiny",
                 chunk_length_s: float = 30.0,
                 language: Optional[str] = None,
                 no_speech_threshold: float = 0.6,
                 logprob_threshold: float = -1.0,
                 compression_ratio_threshold: float = 2.4,
                 temperature: Sequence[float] = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0),
                 transcriber: Optional[Transcriber] = None,
                 config: Optional[ExtractorConfig] = None):
        super().__init__(config)
        self.model_identifier = model_identifier
        self.chunk_length_s = chunk_length_s
        self.language = language
        self.no_speech_threshold = no_speech_threshold
        self.logprob_threshold = logprob_threshold
        self.compression_ratio_threshold = compression_ratio_threshold
        self.temperature = tuple(temperature)
        self._transcriber = transcriber
        self._lock = threading.Lock()

    def _get_transcriber(self) -> Transcriber:
        if self._transcriber is None:
            from transformers import pipeline

            device = 0 if self.config.use_gpu else -1
            logger.info(f"Loading speech recognition model {self.model_identifier}")
            self._transcriber = pipeline(
                "automatic-speech-recognition",
                model=self.model_identifier,
                chunk_length_s=self.chunk_length_s,
                device=device,
            )
        return self._transcriber

    def _audio_input(self, document: Document):
        if isinstance(document.content, Mapping):
            if "raw" not in document.content or "sampling_rate" not in document.content:
                raise ExtractionError(document.document_id, "audio mapping needs 'raw' and 'sampling_rate'")
            return {
                "raw": np.asarray(document.content["raw"], dtype=np.float32),
                "sampling_rate": int(document.content["sampling_rate"]),
            }
        return self.read_bytes(document)

    def _extract(self, document: Document) -> ExtractionResult:
        audio = self._audio_input(document)
        generate_kwargs: Dict[str, Any] = {
            "task": "transcribe",
            "no_speech_threshold": self.no_speech_threshold,
            "logprob_threshold": self.logprob_threshold,
            "compression_ratio_threshold": self.compression_ratio_threshold,
            "temperature": self.temperature,
        }
        if self.language:
            generate_kwargs["language"] = self.language

        with self._lock:
            transcriber = self._get_transcriber()
            try:
                output = transcriber(audio, return_timestamps=True, generate_kwargs=generate_kwargs)
            except (RuntimeError, ValueError) as e:
                raise ExtractionError(document.document_id, f"transcription failed: {e}") from e

        texts, section_meta = [], []
        for chunk in output.get("chunks") or [{"text": output.get("text", ""), "timestamp": (0.0, None)}]:
            text = (chunk.get("text") or "").strip()
            if not text:
                continue
            start, end = chunk.get("timestamp") or (None, None)
            texts.append(text)
            section_meta.append({"start_time": start, "end_time": end})

        logger.debug(f"Transcribed {document_source(document)} into {len(texts)} utterances")
        return ExtractionResult.from_texts(
            texts,
            section_meta,
            metadata={"format": "audio", "transcription_model": self.model_identifier},
        )

    @property
    def supported_formats(self) -> List[str]:
        return [".wav", ".mp3", ".flac", ".ogg", ".m4a"]
