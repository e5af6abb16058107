from datetime import datetime, timedelta, timezone

from scannerlink.assembler import ConversationAssembler, conversation_id_for
from scannerlink.models import ConversationStatus, Segment, Transcript

T0 = datetime(2026, 1, 13, 10, 0, tzinfo=timezone.utc)


def _segment(seq, start_minutes, seconds=10, channel="hosp"):
    start = T0 + timedelta(minutes=start_minutes)
    return Segment(
        id=f"{channel}-{seq}",
        channel_key=channel,
        start_time=start,
        end_time=start + timedelta(seconds=seconds),
        sample_rate=16000,
        channel_count=1,
        payload=b"",
        sequence_number=seq,
    )


def test_conversation_id_format():
    assert conversation_id_for("hosp", T0) == "CONV-2026-01-13-hosp-100000"


def test_segments_within_window_share_a_conversation():
    assembler = ConversationAssembler()
    convs = [assembler.ingest(_segment(i + 1, m)) for i, m in enumerate([0, 4, 9])]

    assert convs[0] is convs[1] is convs[2]
    conv = convs[0]
    assert conv.status is ConversationStatus.OPEN
    assert [s.sequence_number for s in conv.segments] == [1, 2, 3]
    assert conv.window <= timedelta(minutes=10)


def test_window_overflow_starts_new_conversation():
    assembler = ConversationAssembler()
    for i, m in enumerate([0, 4, 9]):
        first = assembler.ingest(_segment(i + 1, m))

    second = assembler.ingest(_segment(4, 11))

    assert second is not first
    assert first.status is ConversationStatus.OVERFLOW
    assert first.overflow is not None
    # midway between 10:09:10 and 10:11:00
    assert first.overflow.recommended_split_time == T0 + timedelta(minutes=10, seconds=5)
    assert second.status is ConversationStatus.OPEN
    assert second.window_start == T0 + timedelta(minutes=11)
    assert [s.id for s in second.segments] == ["hosp-4"]
    assert assembler.open_for("hosp") is second


def test_open_windows_never_exceed_limit():
    assembler = ConversationAssembler()
    for seq, minute in enumerate(range(0, 60, 3), start=1):
        assembler.ingest(_segment(seq, minute, seconds=30))
        for conv in assembler.open_conversations():
            assert conv.window <= timedelta(minutes=10)
    assert len(assembler.open_conversations()) == 1


def test_segments_ordered_by_sequence_number():
    assembler = ConversationAssembler()
    assembler.ingest(_segment(1, 0))
    assembler.ingest(_segment(3, 2))
    conv = assembler.ingest(_segment(2, 1))
    assert [s.sequence_number for s in conv.segments] == [1, 2, 3]


def test_ingest_is_idempotent():
    assembler = ConversationAssembler()
    segment = _segment(1, 0)
    conv = assembler.ingest(segment)
    assert assembler.ingest(segment) is conv
    assert len(conv.segments) == 1


def test_transcript_before_segment_is_attached_later():
    assembler = ConversationAssembler()
    transcript = Transcript(segment_id="hosp-1", text="Medic 12 inbound", confidence=0.8)

    assert assembler.ingest_transcript("hosp-1", transcript) is None
    conv = assembler.ingest(_segment(1, 0))
    assert conv.transcripts["hosp-1"] == transcript
    assert conv.text() == "Medic 12 inbound"


def test_transcript_after_segment():
    assembler = ConversationAssembler()
    assembler.ingest(_segment(1, 0))
    assembler.ingest(_segment(2, 1))
    assembler.ingest_transcript("hosp-2", Transcript("hosp-2", "second"))
    conv = assembler.ingest_transcript("hosp-1", Transcript("hosp-1", "first"))
    assert conv.transcript_texts() == ["first", "second"]


def test_idle_gap_closes_before_new_segment():
    assembler = ConversationAssembler()
    first = assembler.ingest(_segment(1, 0))
    second = assembler.ingest(_segment(2, 15))

    assert first.status is ConversationStatus.CLOSED
    assert first.overflow is None
    assert second.is_open


def test_close_inactive():
    assembler = ConversationAssembler()
    conv = assembler.ingest(_segment(1, 0))
    idle_from = conv.window_end

    assert assembler.close_inactive(idle_from + timedelta(minutes=9)) == []
    assert conv.is_open
    assert assembler.close_inactive(idle_from + timedelta(minutes=11)) == [conv]
    assert conv.status is ConversationStatus.CLOSED
    assert assembler.open_for("hosp") is None


def test_channels_are_independent():
    assembler = ConversationAssembler()
    a = assembler.ingest(_segment(1, 0, channel="north"))
    b = assembler.ingest(_segment(1, 0, channel="south"))
    assert a is not b
    assert len(assembler.open_conversations()) == 2


def test_explicit_close():
    assembler = ConversationAssembler()
    conv = assembler.ingest(_segment(1, 0))
    assembler.close(conv.id)
    assert conv.status is ConversationStatus.CLOSED
    assert assembler.ingest(_segment(2, 1)) is not conv
