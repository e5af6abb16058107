"""Transcription with Faster-Whisper."""

from __future__ import annotations

import io
import logging
import math
import queue
import threading
from typing import Optional

from .models import Segment, Transcript
from .pipeline import PipelineSink

logger = logging.getLogger("scannerlink")


def load_model(
    model_name: str = "small",
    device: str | None = None,
    compute_type: str | None = None,
):
    try:
        from faster_whisper import WhisperModel
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "faster-whisper is required for transcription."
        ) from exc

    kwargs = {}
    if device:
        kwargs["device"] = device
    if compute_type:
        kwargs["compute_type"] = compute_type
    return WhisperModel(model_name, **kwargs)


def transcribe_segment(segment: Segment, model, language: str | None = None) -> Transcript:
    pieces, _info = model.transcribe(io.BytesIO(segment.payload), language=language)
    texts = []
    probabilities = []
    for piece in pieces:
        text = piece.text.strip()
        if text:
            texts.append(text)
            probabilities.append(math.exp(piece.avg_logprob))
    confidence = sum(probabilities) / len(probabilities) if probabilities else 0.0
    return Transcript(
        segment_id=segment.id,
        text=" ".join(texts),
        confidence=round(min(max(confidence, 0.0), 1.0), 4),
    )


class TranscriptionWorker(PipelineSink):
    """Transcribe finalized segments in the background and report back.

    Failures leave the segment without a transcript.
    """

    def __init__(self, pipeline, model, language: Optional[str] = None) -> None:
        self.pipeline = pipeline
        self.model = model
        self.language = language
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def segment_finalized(self, segment: Segment) -> None:
        self._queue.put(segment)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="transcriber", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            segment = self._queue.get()
            if segment is None:
                break
            try:
                transcript = transcribe_segment(segment, self.model, self.language)
            except Exception as exc:
                logger.warning("Transcription failed for segment %s: %s", segment.id, exc)
                continue
            self.pipeline.submit_transcript(
                transcript.segment_id, transcript.text, transcript.confidence
            )

    def stop(self, timeout: float = 30.0) -> None:
        self._queue.put(None)
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
