import itertools
import threading
from datetime import datetime, timedelta, timezone

import numpy as np

from scannerlink.clock import ManualClock
from scannerlink.config import Config, FacilityConfig
from scannerlink.distance import DistanceResult
from scannerlink.models import AudioFrame, IncidentStatus, Location
from scannerlink.pipeline import Pipeline, PipelineSink

RATE = 16000
T0 = datetime(2026, 1, 13, 10, 0, tzinfo=timezone.utc)
SCENE = Location(35.20, -80.80, "400 Oak St")
REQUEST = "Medic 12 requesting orders, this is Dr. Alvarez"


class ThreeMiles:
    def lookup(self, origin, destination):
        return DistanceResult(3.0)


class RecordingSink(PipelineSink):
    def __init__(self):
        self.events = []

    def segment_finalized(self, segment):
        self.events.append(("segment", segment.id))

    def conversation_updated(self, conversation):
        self.events.append(("conversation", conversation.id))

    def signal_evaluated(self, conversation, result):
        self.events.append(("signal", conversation.id, result.is_requested))

    def incident_updated(self, incident):
        self.events.append(("incident", incident.id, incident.status))


def _frames(plan, start, channel="hosp"):
    n = RATE * 20 // 1000
    loud = (5000 * np.sin(2 * np.pi * 440 * np.arange(n) / RATE)).astype("<i2").tobytes()
    quiet = bytes(len(loud))
    ts = start
    frames = []
    for seconds, active in plan:
        for _ in range(seconds * 50):
            frames.append(
                AudioFrame(
                    data=loud if active else quiet,
                    timestamp=ts,
                    sample_rate=RATE,
                    channel_key=channel,
                )
            )
            ts += timedelta(milliseconds=20)
    return frames


def _pipeline(sink=None, dispatch=(), hospital=()):
    config = Config(dispatch_channels=list(dispatch), hospital_channels=list(hospital))
    config.facilities["hosp"] = FacilityConfig(name="General Hospital", address="1 Main St")
    counter = itertools.count(1)
    return Pipeline(
        config,
        distance=ThreeMiles(),
        clock=ManualClock(T0),
        sink=sink,
        id_factory=lambda: f"seg-{next(counter)}",
    )


def test_end_to_end_synchronous():
    sink = RecordingSink()
    pipeline = _pipeline(sink)
    incident = pipeline.handle_dispatch("Medic 12 respond to 400 Oak St", T0, SCENE)

    segments = [
        s
        for s in (
            pipeline.handle_frame(f)
            for f in _frames([(3, True), (6, False)], T0 + timedelta(minutes=32))
        )
        if s is not None
    ]
    assert [s.id for s in segments] == ["seg-1"]
    assert incident.status is IncidentStatus.DISPATCHED

    pipeline.clock.set(T0 + timedelta(minutes=33))
    conv = pipeline.handle_transcript("seg-1", REQUEST, 0.9)
    signal = pipeline.signals[conv.id]
    assert signal.is_requested is True
    assert signal.physician_name == "Alvarez"
    assert incident.status is IncidentStatus.EN_ROUTE
    assert incident.eta_minutes == 7
    assert incident.linked_conversation_id == conv.id

    pipeline.tick(T0 + timedelta(minutes=39))
    assert incident.status is IncidentStatus.ARRIVING_SHORTLY

    report = pipeline.tick(T0 + timedelta(minutes=49))
    assert incident.status is IncidentStatus.COMPLETED
    assert report.closed_conversations == [conv.id]

    assert ("segment", "seg-1") in sink.events
    assert ("signal", conv.id, True) in sink.events
    assert ("incident", incident.id, IncidentStatus.COMPLETED) in sink.events


def test_tick_finalizes_on_silence_deadline():
    pipeline = _pipeline()
    for frame in _frames([(2, True)], T0):
        assert pipeline.handle_frame(frame) is None

    pipeline.tick(T0 + timedelta(seconds=4))
    assert pipeline.assembler.conversations() == []
    pipeline.tick(T0 + timedelta(seconds=7))
    assert len(pipeline.assembler.conversations()) == 1


def test_flush_emits_buffered_audio():
    pipeline = _pipeline()
    for frame in _frames([(2, True)], T0):
        pipeline.handle_frame(frame)

    flushed = pipeline.flush()
    assert len(flushed) == 1
    assert flushed[0].duration_seconds == 2.0
    assert pipeline.flush() == []


def test_failing_sink_does_not_break_analysis():
    class BrokenSink(PipelineSink):
        def signal_evaluated(self, conversation, result):
            raise RuntimeError("disk full")

    pipeline = _pipeline(BrokenSink())
    incident = pipeline.handle_dispatch("Medic 12 respond", T0, SCENE)
    for frame in _frames([(3, True), (6, False)], T0 + timedelta(minutes=5)):
        pipeline.handle_frame(frame)
    pipeline.handle_transcript("seg-1", REQUEST)
    assert incident.status is IncidentStatus.EN_ROUTE


def test_threaded_pipeline():
    pipeline = _pipeline()
    pipeline.start()
    try:
        pipeline.submit_dispatch("Medic 12 respond to 400 Oak St", T0, SCENE)
        for frame in _frames([(3, True), (6, False)], T0 + timedelta(minutes=32)):
            pipeline.submit_frame(frame)
        pipeline.submit_transcript("seg-1", REQUEST, 0.9)
    finally:
        pipeline.stop()

    incident = pipeline.correlator.get(1)
    conv = pipeline.assembler.conversation_for_segment("seg-1")
    assert conv is not None
    assert pipeline.signals[conv.id].is_requested is True
    assert incident.status is IncidentStatus.EN_ROUTE
    assert incident.linked_conversation_id == conv.id


def _speak(pipeline, start, channel):
    for frame in _frames([(3, True), (6, False)], start, channel):
        pipeline.handle_frame(frame)


def test_dispatch_channel_creates_incidents():
    pipeline = _pipeline(dispatch=["dispatch"], hospital=["hosp"])

    _speak(pipeline, T0, "dispatch")
    assert pipeline.assembler.conversations() == []
    assert pipeline.handle_transcript("seg-1", "Medic 12 respond to 400 Oak St for a fall") is None
    incident = pipeline.correlator.get(1)
    assert incident.unit_id == "Medic 12"
    assert incident.dispatch_time == T0

    # dispatch chatter about the same unit never advances the incident
    _speak(pipeline, T0 + timedelta(minutes=2), "dispatch")
    pipeline.handle_transcript("seg-2", "Medic 12 copy, en route")
    assert incident.status is IncidentStatus.DISPATCHED
    assert pipeline.assembler.conversations() == []

    _speak(pipeline, T0 + timedelta(minutes=32), "hosp")
    conv = pipeline.handle_transcript("seg-3", REQUEST)
    assert incident.status is IncidentStatus.EN_ROUTE
    assert incident.linked_conversation_id == conv.id


def test_dispatch_transcript_before_segment():
    pipeline = _pipeline(dispatch=["dispatch"])
    assert pipeline.handle_transcript("seg-1", "Medic 12 respond to 400 Oak St") is None
    assert pipeline.correlator.incidents() == []

    _speak(pipeline, T0, "dispatch")
    incidents = pipeline.correlator.incidents()
    assert len(incidents) == 1
    assert incidents[0].dispatch_time == T0
    assert pipeline.handle_transcript("seg-1", "Medic 12 respond to 400 Oak St") is None
    assert len(pipeline.correlator.incidents()) == 1


def test_other_channels_are_scored_but_not_correlated():
    pipeline = _pipeline(hospital=["hosp"])
    incident = pipeline.handle_dispatch("Medic 12 respond", T0, SCENE)

    _speak(pipeline, T0 + timedelta(minutes=5), "fire")
    conv = pipeline.handle_transcript("seg-1", REQUEST)
    assert pipeline.signals[conv.id].is_requested is True
    assert incident.status is IncidentStatus.DISPATCHED


def test_threaded_dispatch_channel():
    pipeline = _pipeline(dispatch=["dispatch"])
    pipeline.start()
    try:
        for frame in _frames([(3, True), (6, False)], T0, "dispatch"):
            pipeline.submit_frame(frame)
        pipeline.submit_transcript("seg-1", "Medic 12 respond to 400 Oak St")
    finally:
        pipeline.stop()

    incidents = pipeline.correlator.incidents()
    assert len(incidents) == 1
    assert incidents[0].unit_id == "Medic 12"


def test_concurrent_first_frames_start_one_worker():
    pipeline = _pipeline()
    quiet = AudioFrame(data=bytes(640), timestamp=T0, sample_rate=RATE, channel_key="hosp")
    barrier = threading.Barrier(8)

    def submit():
        barrier.wait()
        pipeline.submit_frame(quiet)

    threads = [threading.Thread(target=submit) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    try:
        assert len(pipeline._workers) == 1
        assert len(pipeline._channel_queues) == 1
    finally:
        pipeline.stop()
