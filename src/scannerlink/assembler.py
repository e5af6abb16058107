"""Group segments on the same channel into bounded conversations."""

from __future__ import annotations

import bisect
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import ConversationConfig
from .locks import EntityLocks
from .models import Conversation, ConversationStatus, Overflow, Segment, Transcript

logger = logging.getLogger("scannerlink")


def conversation_id_for(channel_key: str, start: datetime) -> str:
    return f"CONV-{start:%Y-%m-%d}-{channel_key}-{start:%H%M%S}"


class ConversationAssembler:
    """Keep at most one OPEN conversation per channel key.

    A segment that would stretch the open conversation past the maximum
    window marks it OVERFLOW (with a recommended split time) and starts a new
    one, so an OPEN window never exceeds the limit.
    """

    def __init__(self, config: Optional[ConversationConfig] = None) -> None:
        self.config = config or ConversationConfig()
        self.max_window = timedelta(minutes=self.config.max_window_minutes)
        self.inactivity = timedelta(minutes=self.config.inactivity_minutes)
        self._conversations: Dict[str, Conversation] = {}
        self._open: Dict[str, str] = {}
        self._segment_index: Dict[str, str] = {}
        self._pending_transcripts: Dict[str, Transcript] = {}
        self._index_lock = threading.Lock()
        self._channel_locks = EntityLocks()
        self.locks = EntityLocks()

    def get(self, conversation_id: str) -> Conversation:
        return self._conversations[conversation_id]

    def conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    def open_conversations(self) -> List[Conversation]:
        return [self._conversations[cid] for cid in list(self._open.values())]

    def open_for(self, channel_key: str) -> Optional[Conversation]:
        cid = self._open.get(channel_key)
        return self._conversations.get(cid) if cid else None

    def conversation_for_segment(self, segment_id: str) -> Optional[Conversation]:
        cid = self._segment_index.get(segment_id)
        return self._conversations.get(cid) if cid else None

    def ingest(self, segment: Segment) -> Conversation:
        existing = self.conversation_for_segment(segment.id)
        if existing is not None:
            return existing

        with self._channel_locks.lock_for(segment.channel_key):
            conv = self.open_for(segment.channel_key)
            if conv is None:
                return self._start(segment)

            with self.locks.lock_for(conv.id):
                if not conv.is_open:
                    conv = None
                elif segment.start_time - conv.window_end > self.inactivity:
                    logger.info(
                        "Conversation %s idle past %s; closing before new segment",
                        conv.id,
                        self.inactivity,
                    )
                    self._mark_closed(conv, ConversationStatus.CLOSED, segment.start_time)
                    conv = None
                elif self._would_overflow(conv, segment):
                    self._mark_overflow(conv, segment)
                    conv = None
                else:
                    self._append(conv, segment)

            if conv is None:
                return self._start(segment)
        self._register(conv, segment)
        return conv

    def _would_overflow(self, conv: Conversation, segment: Segment) -> bool:
        start = min(conv.window_start, segment.start_time)
        end = max(conv.window_end, segment.end_time)
        return end - start > self.max_window

    def _mark_overflow(self, conv: Conversation, segment: Segment) -> None:
        last = conv.segments[-1]
        split = last.end_time + (segment.start_time - last.end_time) / 2
        conv.overflow = Overflow(recommended_split_time=split)
        self._mark_closed(conv, ConversationStatus.OVERFLOW, segment.start_time)
        logger.warning(
            "Conversation %s would exceed %s window; marked OVERFLOW, split at %s",
            conv.id,
            self.max_window,
            split.isoformat(),
        )

    def _mark_closed(
        self, conv: Conversation, status: ConversationStatus, at: datetime
    ) -> None:
        conv.status = status
        conv.closed_at = at
        if self._open.get(conv.channel_key) == conv.id:
            del self._open[conv.channel_key]

    def _append(self, conv: Conversation, segment: Segment) -> None:
        keys = [s.sequence_number for s in conv.segments]
        idx = bisect.bisect_right(keys, segment.sequence_number)
        conv.segments.insert(idx, segment)
        conv.window_start = min(conv.window_start, segment.start_time)
        conv.window_end = max(conv.window_end, segment.end_time)

    def _start(self, segment: Segment) -> Conversation:
        cid = conversation_id_for(segment.channel_key, segment.start_time)
        suffix = 1
        while cid in self._conversations:
            suffix += 1
            cid = f"{conversation_id_for(segment.channel_key, segment.start_time)}-{suffix}"
        conv = Conversation(
            id=cid,
            channel_key=segment.channel_key,
            window_start=segment.start_time,
            window_end=segment.end_time,
            segments=[segment],
        )
        self._conversations[cid] = conv
        self._open[segment.channel_key] = cid
        logger.info("Started conversation %s on %s", cid, segment.channel_key)
        self._register(conv, segment)
        return conv

    def _register(self, conv: Conversation, segment: Segment) -> None:
        with self._index_lock:
            self._segment_index[segment.id] = conv.id
            pending = self._pending_transcripts.pop(segment.id, None)
        if pending is not None:
            with self.locks.lock_for(conv.id):
                conv.transcripts[segment.id] = pending

    def ingest_transcript(
        self, segment_id: str, transcript: Transcript
    ) -> Optional[Conversation]:
        with self._index_lock:
            cid = self._segment_index.get(segment_id)
            if cid is None:
                self._pending_transcripts[segment_id] = transcript
                logger.debug("Transcript for unassembled segment %s held", segment_id)
                return None
        conv = self._conversations[cid]
        with self.locks.lock_for(conv.id):
            conv.transcripts[segment_id] = transcript
        return conv

    def take_pending_transcript(self, segment_id: str) -> Optional[Transcript]:
        """Remove and return a transcript held for a segment never ingested here."""
        with self._index_lock:
            return self._pending_transcripts.pop(segment_id, None)

    def close(self, conversation_id: str, at: Optional[datetime] = None) -> Conversation:
        conv = self._conversations[conversation_id]
        with self.locks.lock_for(conv.id):
            if conv.is_open:
                self._mark_closed(conv, ConversationStatus.CLOSED, at or conv.window_end)
                logger.info("Conversation %s closed on request", conv.id)
        return conv

    def close_if_inactive(self, conversation_id: str, now: datetime) -> bool:
        conv = self._conversations[conversation_id]
        with self.locks.lock_for(conv.id):
            if conv.is_open and now - conv.window_end > self.inactivity:
                self._mark_closed(conv, ConversationStatus.CLOSED, now)
                logger.info("Conversation %s closed after inactivity", conv.id)
                return True
        return False

    def close_inactive(self, now: datetime) -> List[Conversation]:
        closed = []
        for conv in self.open_conversations():
            if self.close_if_inactive(conv.id, now):
                closed.append(conv)
        return closed
