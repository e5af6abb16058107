"""Energy-based voice activity segmentation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .audio_utils import (
    BYTES_PER_SAMPLE,
    bytes_per_second,
    pcm16_rms,
    pcm_duration_seconds,
    wrap_wav,
)
from .config import SegmenterConfig
from .models import AudioFrame, Segment

logger = logging.getLogger("scannerlink")


def _new_segment_id() -> str:
    return str(uuid.uuid4())


class ActivitySegmenter:
    """Turn a frame stream for one channel into finalized speech segments.

    The silence timer is a single stored deadline. Each active frame replaces
    it, and ``poll`` fires it once the clock passes it, so callers decide when
    time advances.
    """

    def __init__(
        self,
        channel_key: str,
        config: Optional[SegmenterConfig] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.channel_key = channel_key
        self.config = config or SegmenterConfig()
        self._id_factory = id_factory or _new_segment_id
        self._frames: List[bytes] = []
        self._byte_count = 0
        self._start: Optional[datetime] = None
        self._deadline: Optional[datetime] = None
        self._sample_rate = 0
        self._channels = 0
        self._sequence = 0

    @property
    def is_accumulating(self) -> bool:
        return bool(self._frames)

    @property
    def silence_deadline(self) -> Optional[datetime]:
        return self._deadline

    @property
    def buffered_seconds(self) -> float:
        if not self._frames:
            return 0.0
        return pcm_duration_seconds(self._byte_count, self._sample_rate, self._channels)

    def is_active(self, frame: AudioFrame) -> bool:
        if len(frame.data) < self.config.min_frame_bytes:
            return False
        return pcm16_rms(frame.data) > self.config.rms_threshold

    def process_frame(self, frame: AudioFrame) -> Optional[Segment]:
        emitted = self.poll(frame.timestamp)
        if not self.is_active(frame):
            return emitted

        if self._frames and (
            frame.sample_rate != self._sample_rate or frame.channels != self._channels
        ):
            logger.warning(
                "Channel %s format changed to %s Hz/%s ch mid-segment; finalizing",
                self.channel_key,
                frame.sample_rate,
                frame.channels,
            )
            emitted = emitted or self.finalize()

        if not self._frames:
            self._start = frame.timestamp
            self._sample_rate = frame.sample_rate
            self._channels = frame.channels
            logger.debug("Activity on %s, opening segment at %s", self.channel_key, self._start)

        self._frames.append(frame.data)
        self._byte_count += len(frame.data)
        self._deadline = frame.timestamp + timedelta(
            seconds=self.config.silence_timeout_seconds
        )

        if emitted is None and self._cap_reached():
            logger.debug("Maximum segment length reached on %s", self.channel_key)
            emitted = self.finalize()
        return emitted

    def poll(self, now: datetime) -> Optional[Segment]:
        if not self._frames:
            return None
        if self._deadline is not None and now >= self._deadline:
            logger.debug("Silence timeout on %s", self.channel_key)
            return self.finalize()
        if self._cap_reached():
            return self.finalize()
        return None

    def flush(self) -> Optional[Segment]:
        return self.finalize()

    def _cap_reached(self) -> bool:
        cap = bytes_per_second(self._sample_rate, self._channels) * self.config.max_segment_seconds
        return self._byte_count >= cap

    def finalize(self) -> Optional[Segment]:
        if not self._frames:
            logger.debug("Finalize on %s with empty buffer; nothing to emit", self.channel_key)
            return None

        pcm = b"".join(self._frames)
        block = self._channels * BYTES_PER_SAMPLE
        pcm = pcm[: len(pcm) - len(pcm) % block]
        duration = pcm_duration_seconds(len(pcm), self._sample_rate, self._channels)
        self._sequence += 1
        segment = Segment(
            id=self._id_factory(),
            channel_key=self.channel_key,
            start_time=self._start,
            end_time=self._start + timedelta(seconds=duration),
            sample_rate=self._sample_rate,
            channel_count=self._channels,
            payload=wrap_wav(pcm, self._sample_rate, self._channels),
            sequence_number=self._sequence,
        )
        self._frames = []
        self._byte_count = 0
        self._start = None
        self._deadline = None
        logger.info(
            "Segment %s on %s finalized (%.2fs, %d bytes)",
            segment.id,
            self.channel_key,
            duration,
            len(pcm),
        )
        return segment
