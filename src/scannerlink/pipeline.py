"""Stage wiring: frames -> segments -> conversations -> signals and incidents.

Each channel key gets its own worker thread that owns that channel's
segmenter and feeds the assembler. A single analysis worker applies
transcripts, runs detection, handles dispatch traffic and links incidents,
so correlation has one writer. Segments on dispatch channels become dispatch
events once transcribed; only hospital-channel conversations are correlated.
Stages talk through ``queue.Queue``s. The synchronous ``handle_*`` methods
run the same steps inline and are what the workers call.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .assembler import ConversationAssembler
from .clock import SystemClock
from .config import Config
from .correlator import IncidentCorrelator
from .models import (
    AudioFrame,
    Conversation,
    Incident,
    Location,
    Segment,
    SignalResult,
    Transcript,
)
from .scheduler import LifecycleScheduler, SweepReport
from .segmenter import ActivitySegmenter
from .signals import SignalDetector

logger = logging.getLogger("scannerlink")

_STOP = object()


class PipelineSink:
    """Receives pipeline output. Override what you need."""

    def segment_finalized(self, segment: Segment) -> None:
        pass

    def conversation_updated(self, conversation: Conversation) -> None:
        pass

    def signal_evaluated(self, conversation: Conversation, result: SignalResult) -> None:
        pass

    def incident_updated(self, incident: Incident) -> None:
        pass


class CompositeSink(PipelineSink):
    def __init__(self, sinks: Iterable[PipelineSink]) -> None:
        self.sinks = list(sinks)

    def _each(self, method: str, *args) -> None:
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args)
            except Exception as exc:
                logger.warning("Sink %s.%s failed: %s", type(sink).__name__, method, exc)

    def segment_finalized(self, segment: Segment) -> None:
        self._each("segment_finalized", segment)

    def conversation_updated(self, conversation: Conversation) -> None:
        self._each("conversation_updated", conversation)

    def signal_evaluated(self, conversation: Conversation, result: SignalResult) -> None:
        self._each("signal_evaluated", conversation, result)

    def incident_updated(self, incident: Incident) -> None:
        self._each("incident_updated", incident)


@dataclass
class TranscriptMessage:
    segment_id: str
    text: str
    confidence: float = 0.0


@dataclass
class DispatchMessage:
    text: str
    time: datetime
    location: Optional[Location] = None


@dataclass
class ConversationMessage:
    conversation_id: str


class Pipeline:
    def __init__(
        self,
        config: Optional[Config] = None,
        distance=None,
        clock=None,
        sink: Optional[PipelineSink] = None,
        id_factory=None,
        poll_interval: float = 0.25,
    ) -> None:
        self.config = config or Config()
        self.clock = clock or SystemClock()
        self.sink = sink or PipelineSink()
        self.poll_interval = poll_interval
        self._id_factory = id_factory
        facilities = {
            key: entry.to_facility() for key, entry in self.config.facilities.items()
        }
        self.assembler = ConversationAssembler(self.config.conversation)
        self.detector = SignalDetector(self.config.signals)
        self.correlator = IncidentCorrelator(
            self.config.correlator, facilities=facilities, distance=distance, clock=self.clock
        )
        self.scheduler = LifecycleScheduler(
            self.assembler,
            self.correlator,
            self.config.scheduler,
            clock=self.clock,
            on_report=self._on_sweep,
        )
        self.signals: Dict[str, SignalResult] = {}
        self._segmenters: Dict[str, ActivitySegmenter] = {}
        self._segmenters_lock = threading.Lock()
        self._channel_queues: Dict[str, queue.Queue] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self._channels_lock = threading.Lock()
        self._dispatch_segments: Dict[str, Segment] = {}
        self._dispatch_lock = threading.Lock()
        self._analysis_queue: queue.Queue = queue.Queue()
        self._analysis_thread: Optional[threading.Thread] = None
        self._started = False

    def segmenter_for(self, channel_key: str) -> ActivitySegmenter:
        with self._segmenters_lock:
            segmenter = self._segmenters.get(channel_key)
            if segmenter is None:
                segmenter = ActivitySegmenter(
                    channel_key, self.config.segmenter, id_factory=self._id_factory
                )
                self._segmenters[channel_key] = segmenter
            return segmenter

    # Synchronous handlers

    def handle_frame(self, frame: AudioFrame) -> Optional[Segment]:
        segment = self.segmenter_for(frame.channel_key).process_frame(frame)
        if segment is not None:
            self.handle_segment(segment)
        return segment

    def handle_segment(self, segment: Segment, analyze: bool = True) -> Optional[Conversation]:
        """Route a finalized segment by its channel's role.

        Dispatch segments wait for their transcript and become dispatch
        events; they never join a conversation. With ``analyze`` false the
        analysis step is queued for the analysis worker instead of run inline.
        """
        self.sink.segment_finalized(segment)
        if self.config.channel_role(segment.channel_key) == "dispatch":
            transcript = self._hold_dispatch_segment(segment)
            if transcript is not None:
                if analyze:
                    self.handle_dispatch(transcript.text, segment.start_time)
                else:
                    self._analysis_queue.put(
                        DispatchMessage(transcript.text, segment.start_time)
                    )
            return None
        conversation = self.assembler.ingest(segment)
        self.sink.conversation_updated(conversation)
        if analyze:
            self.analyze(conversation)
        return conversation

    def _hold_dispatch_segment(self, segment: Segment) -> Optional[Transcript]:
        with self._dispatch_lock:
            transcript = self.assembler.take_pending_transcript(segment.id)
            if transcript is None:
                self._dispatch_segments[segment.id] = segment
        return transcript

    def handle_transcript(
        self, segment_id: str, text: str, confidence: float = 0.0
    ) -> Optional[Conversation]:
        transcript = Transcript(segment_id=segment_id, text=text or "", confidence=confidence)
        conversation = None
        with self._dispatch_lock:
            segment = self._dispatch_segments.pop(segment_id, None)
            if segment is None:
                conversation = self.assembler.ingest_transcript(segment_id, transcript)
        if segment is not None:
            self.handle_dispatch(transcript.text, segment.start_time)
            return None
        if conversation is not None:
            self.analyze(conversation)
        return conversation

    def handle_dispatch(
        self,
        text: str,
        time: Optional[datetime] = None,
        location: Optional[Location] = None,
    ) -> Optional[Incident]:
        incident = self.correlator.on_dispatch_event(text, time or self.clock.now(), location)
        if incident is not None:
            self.sink.incident_updated(incident)
        return incident

    def analyze(self, conversation: Conversation) -> Optional[SignalResult]:
        result = None
        try:
            result = self.detector.evaluate(conversation)
            self.signals[conversation.id] = result
            self.sink.signal_evaluated(conversation, result)
        except Exception as exc:
            logger.warning("Signal detection failed for %s: %s", conversation.id, exc)
        if self.config.channel_role(conversation.channel_key) != "hospital":
            return result
        try:
            for incident in self.correlator.on_conversation_update(conversation):
                self.sink.incident_updated(incident)
        except Exception as exc:
            logger.warning("Correlation failed for %s: %s", conversation.id, exc)
        return result

    def tick(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock.now()
        for segmenter in list(self._segmenters.values()):
            segment = segmenter.poll(now)
            if segment is not None:
                self.handle_segment(segment)
        return self.scheduler.sweep(now)

    def flush(self) -> List[Segment]:
        flushed = []
        for segmenter in list(self._segmenters.values()):
            segment = segmenter.flush()
            if segment is not None:
                self.handle_segment(segment)
                flushed.append(segment)
        return flushed

    def _on_sweep(self, report: SweepReport) -> None:
        for conversation_id in report.closed_conversations:
            self.sink.conversation_updated(self.assembler.get(conversation_id))
        for incident_id in {incident_id for incident_id, _ in report.transitions}:
            self.sink.incident_updated(self.correlator.get(incident_id))

    # Threaded operation

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._analysis_thread = threading.Thread(
            target=self._analysis_loop, name="analysis", daemon=True
        )
        self._analysis_thread.start()
        self.scheduler.start()
        logger.info("Pipeline started")

    def submit_frame(self, frame: AudioFrame) -> None:
        self._channel_queue(frame.channel_key).put(frame)

    def submit_transcript(self, segment_id: str, text: str, confidence: float = 0.0) -> None:
        self._analysis_queue.put(TranscriptMessage(segment_id, text, confidence))

    def submit_dispatch(
        self,
        text: str,
        time: Optional[datetime] = None,
        location: Optional[Location] = None,
    ) -> None:
        self._analysis_queue.put(DispatchMessage(text, time or self.clock.now(), location))

    def _channel_queue(self, channel_key: str) -> queue.Queue:
        with self._channels_lock:
            q = self._channel_queues.get(channel_key)
            if q is None:
                q = queue.Queue()
                self._channel_queues[channel_key] = q
                worker = threading.Thread(
                    target=self._channel_loop,
                    args=(channel_key, q),
                    name=f"channel-{channel_key}",
                    daemon=True,
                )
                self._workers[channel_key] = worker
                worker.start()
            return q

    def _segment_ready(self, segment: Segment) -> None:
        conversation = self.handle_segment(segment, analyze=False)
        if conversation is not None:
            self._analysis_queue.put(ConversationMessage(conversation.id))

    def _channel_loop(self, channel_key: str, q: queue.Queue) -> None:
        segmenter = self.segmenter_for(channel_key)
        while True:
            try:
                item = q.get(timeout=self.poll_interval)
            except queue.Empty:
                segment = segmenter.poll(self.clock.now())
                if segment is not None:
                    self._segment_ready(segment)
                continue
            try:
                if item is _STOP:
                    segment = segmenter.flush()
                    if segment is not None:
                        self._segment_ready(segment)
                    break
                segment = segmenter.process_frame(item)
                if segment is not None:
                    self._segment_ready(segment)
            except Exception:
                logger.exception("Channel %s failed on a frame", channel_key)

    def _analysis_loop(self) -> None:
        while True:
            item = self._analysis_queue.get()
            if item is _STOP:
                break
            try:
                if isinstance(item, TranscriptMessage):
                    self.handle_transcript(item.segment_id, item.text, item.confidence)
                elif isinstance(item, DispatchMessage):
                    self.handle_dispatch(item.text, item.time, item.location)
                elif isinstance(item, ConversationMessage):
                    self.analyze(self.assembler.get(item.conversation_id))
            except Exception:
                logger.exception("Analysis failed for %r", item)

    def stop(self, timeout: float = 10.0) -> None:
        with self._channels_lock:
            queues = list(self._channel_queues.values())
            workers = list(self._workers.values())
            self._channel_queues.clear()
            self._workers.clear()
        for q in queues:
            q.put(_STOP)
        for worker in workers:
            worker.join(timeout)
        if self._analysis_thread is not None:
            self._analysis_queue.put(_STOP)
            self._analysis_thread.join(timeout)
            self._analysis_thread = None
        self.scheduler.stop()
        self._started = False
        logger.info("Pipeline stopped")
